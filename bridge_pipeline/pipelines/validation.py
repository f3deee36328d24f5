"""Validation gate deciding whether the pipeline may move past a phase."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..core.config import settings
from ..models.sources import PipelinePhase, utc_now
from .executor import PhaseRunResult
from .registry import SourceRegistry

logger = logging.getLogger(__name__)

DEFAULT_IMPACT = "Failed sources must be resolved before continuing the pipeline"
DEFAULT_RESOLUTION = (
    "Check the recorded error for each failed source, fix network or URL problems, "
    "then re-run the phase with --resume. Use --force-proceed to continue anyway."
)


class BlockingPipelineError(Exception):
    """Too many sources failed for the pipeline to continue safely."""

    def __init__(
        self,
        phase: PipelinePhase,
        failed_urls: List[str],
        considered_count: int,
        threshold: float = 0.0,
        sample_size: int = 5,
        impact: str = DEFAULT_IMPACT,
        resolution_hint: str = DEFAULT_RESOLUTION,
        reason: Optional[str] = None,
    ):
        self.phase = phase
        self.failed_urls = list(failed_urls)
        self.failed_count = len(self.failed_urls)
        self.considered_count = considered_count
        self.failure_ratio = (
            round(self.failed_count / considered_count, 4) if considered_count else 0.0
        )
        self.threshold = threshold
        self.sample_failed_urls = self.failed_urls[:sample_size]
        self.remaining_count = self.failed_count - len(self.sample_failed_urls)
        self.impact = impact
        self.resolution_hint = resolution_hint
        self.timestamp = utc_now()
        self.reason = reason or (
            f"{self.failed_count} of {considered_count} sources failed in {phase.value}"
        )
        super().__init__(f"Cannot proceed past {phase.value}: {self.reason}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": "blocking_pipeline_error",
            "phase": self.phase.value,
            "reason": self.reason,
            "failed_count": self.failed_count,
            "considered_count": self.considered_count,
            "failure_ratio": self.failure_ratio,
            "threshold": self.threshold,
            "sample_failed_urls": list(self.sample_failed_urls),
            "remaining_count": self.remaining_count,
            "impact": self.impact,
            "resolution_hint": self.resolution_hint,
            "timestamp": self.timestamp,
        }

    def render(self) -> str:
        """Human-readable diagnostic for the terminal."""
        lines = [
            "PIPELINE BLOCKED",
            f"Phase: {self.phase.value}",
            f"Issue: {self.reason}",
            f"Failure ratio: {self.failure_ratio:.2%} (threshold {self.threshold:.2%})",
            "Failed sources:",
        ]
        lines.extend(f"  - {url}" for url in self.sample_failed_urls)
        if self.remaining_count:
            lines.append(f"  (and {self.remaining_count} more)")
        lines.append(f"Impact: {self.impact}")
        lines.append(f"Resolution: {self.resolution_hint}")
        return "\n".join(lines)


@dataclass
class GateDecision:
    """Outcome of a gate check that allowed progression."""

    phase: PipelinePhase
    passed: bool = True
    overridden: bool = False
    failure_ratio: float = 0.0
    warnings: List[str] = field(default_factory=list)


class ValidationGate:
    """Compares phase failure ratios against per-phase thresholds."""

    def __init__(
        self,
        default_threshold: Optional[float] = None,
        thresholds: Optional[Dict[PipelinePhase, float]] = None,
        sample_size: Optional[int] = None,
    ):
        self.default_threshold = (
            settings.validation_failure_threshold
            if default_threshold is None
            else default_threshold
        )
        self.thresholds = dict(thresholds or {})
        self.sample_size = sample_size or settings.validation_sample_size

        for value in [self.default_threshold, *self.thresholds.values()]:
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Failure threshold must be between 0 and 1, got {value}")

    def threshold_for(self, phase: PipelinePhase) -> float:
        return self.thresholds.get(phase, self.default_threshold)

    def validate(self, result: PhaseRunResult, override: bool = False) -> GateDecision:
        """Check a phase's outcome, raising ``BlockingPipelineError`` when it fails.

        With ``override`` the failure is downgraded to a warning on the decision.
        """
        phase = result.phase
        decision = GateDecision(phase=phase, failure_ratio=result.failure_ratio)

        if result.considered_count == 0:
            decision.warnings.append(f"No eligible sources were processed in {phase.value}")
            return decision

        threshold = self.threshold_for(phase)
        if result.failed_count == 0 or result.failure_ratio <= threshold:
            if result.failed_count:
                decision.warnings.append(
                    f"{result.failed_count} sources failed in {phase.value}, "
                    f"within tolerance {threshold:.2%}"
                )
            return decision

        error = BlockingPipelineError(
            phase=phase,
            failed_urls=result.failed_urls,
            considered_count=result.considered_count,
            threshold=threshold,
            sample_size=self.sample_size,
        )
        if not override:
            logger.error(str(error))
            raise error

        decision.passed = False
        decision.overridden = True
        decision.warnings.append(
            f"Proceeding past {phase.value} with {error.failed_count} failed sources "
            f"(force proceed): {', '.join(error.sample_failed_urls)}"
            + (f" (and {error.remaining_count} more)" if error.remaining_count else "")
        )
        return decision

    def check_prior_failures(
        self,
        registry: SourceRegistry,
        next_phase: PipelinePhase,
        force_proceed: bool = False,
        retrying: Iterable[str] = (),
    ) -> GateDecision:
        """Refuse to start ``next_phase`` while failed sources remain unresolved.

        Failed sources that the upcoming invocation is about to retry do not count.
        """
        retrying = set(retrying)
        failed_urls = sorted(
            record.url for record in registry.failed_sources() if record.url not in retrying
        )
        decision = GateDecision(phase=next_phase)
        if not failed_urls:
            return decision

        error = BlockingPipelineError(
            phase=next_phase,
            failed_urls=failed_urls,
            considered_count=len(registry),
            threshold=0.0,
            sample_size=self.sample_size,
            reason=f"{len(failed_urls)} sources have failed status",
        )
        if not force_proceed:
            logger.error(str(error))
            raise error

        decision.passed = False
        decision.overridden = True
        decision.failure_ratio = error.failure_ratio
        decision.warnings.append(
            f"Proceeding to {next_phase.value} with {len(failed_urls)} failed sources "
            f"(force proceed); they are excluded from processing"
        )
        return decision
