"""Retryable per-record execution of a pipeline phase."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import aiohttp

from ..models.sources import (
    PHASE_ENTRY_STATUS,
    PHASE_IN_PROGRESS_STATUS,
    PHASE_SUCCESS_STATUS,
    PHASE_TIMESTAMP_FIELD,
    PhaseMetadataBase,
    PhaseStats,
    PipelinePhase,
    SourceError,
    SourceRecord,
    SourceStatus,
    utc_now,
)
from .registry import SourceRegistry
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class OperationFailedError(Exception):
    """A record exhausted its attempts for a phase."""

    def __init__(self, url: str, phase: PipelinePhase, error: SourceError):
        self.url = url
        self.phase = phase
        self.error = error
        super().__init__(
            f"{phase.value} failed for {url} after {error.retry_count} attempts: "
            f"[{error.code}] {error.message}"
        )


@dataclass
class OperationOutput:
    """Result of one successful operation: phase metadata plus extra record fields."""

    metadata: PhaseMetadataBase
    updates: Dict[str, Any] = field(default_factory=dict)


Operation = Callable[
    [SourceRecord, int], Awaitable[Union[PhaseMetadataBase, OperationOutput]]
]


@dataclass
class PhaseRunResult:
    """Aggregate outcome of one phase invocation."""

    phase: PipelinePhase
    considered_urls: List[str] = field(default_factory=list)
    succeeded_urls: List[str] = field(default_factory=list)
    failed_urls: List[str] = field(default_factory=list)
    errors: Dict[str, SourceError] = field(default_factory=dict)
    skipped_urls: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None

    @property
    def considered_count(self) -> int:
        return len(self.considered_urls)

    @property
    def failed_count(self) -> int:
        return len(self.failed_urls)

    @property
    def failure_ratio(self) -> float:
        if not self.considered_urls:
            return 0.0
        return self.failed_count / self.considered_count

    def record_failure(self, url: str, error: SourceError) -> None:
        self.failed_urls.append(url)
        self.errors[url] = error

    def to_stats(self) -> PhaseStats:
        completed_at = self.completed_at or utc_now()
        duration = (
            datetime.fromisoformat(completed_at) - datetime.fromisoformat(self.started_at)
        ).total_seconds()
        success_rate = (
            round(len(self.succeeded_urls) / self.considered_count * 100, 2)
            if self.considered_urls
            else 0.0
        )
        return PhaseStats(
            total_sources=self.considered_count,
            succeeded_sources=len(self.succeeded_urls),
            failed_sources=self.failed_count,
            skipped_sources=len(self.skipped_urls),
            started_at=self.started_at,
            completed_at=completed_at,
            duration_seconds=max(duration, 0.0),
            success_rate=success_rate,
            warnings=list(self.warnings),
            details=dict(self.details),
        )


def build_source_error(exc: BaseException, phase: PipelinePhase, attempt: int) -> SourceError:
    """Translate an exception raised by an operation into a ``SourceError``."""
    code = getattr(exc, "code", None)
    if isinstance(exc, asyncio.TimeoutError):
        code = "timeout"
        message = "Operation timed out"
    else:
        message = str(exc) or exc.__class__.__name__
        if not isinstance(code, str) or not code:
            if isinstance(exc, (aiohttp.ClientError, OSError)):
                code = "network_error"
            else:
                code = "unknown_error"

    http_status = getattr(exc, "http_status", None)
    return SourceError(
        code=code,
        message=message,
        retry_count=attempt,
        phase=phase,
        http_status=http_status if isinstance(http_status, int) else None,
    )


class PhaseExecutor:
    """Runs an operation over records with retries, backoff and bounded concurrency.

    Each record moves entry status -> in-progress -> success or failed. The
    executor only touches the registry's in-memory state; it never saves.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        phase: PipelinePhase,
        operation: Operation,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 1,
        attempt_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if phase not in PHASE_IN_PROGRESS_STATUS:
            raise ValueError(f"Phase {phase.value} has no per-record execution")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.registry = registry
        self.phase = phase
        self.operation = operation
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max_concurrency
        self.attempt_timeout = attempt_timeout
        self.sleep = sleep

    async def run(self, records: Sequence[SourceRecord]) -> PhaseRunResult:
        """Process every record, collecting per-record failures into the result."""
        result = PhaseRunResult(
            phase=self.phase, considered_urls=[record.url for record in records]
        )
        if not records:
            result.completed_at = utc_now()
            return result

        semaphore = asyncio.Semaphore(self.max_concurrency)
        logger.info(
            f"Running {self.phase.value} over {len(records)} sources "
            f"(concurrency {self.max_concurrency})"
        )

        tasks = [self._process_with_semaphore(semaphore, record) for record in records]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        unexpected: Optional[BaseException] = None
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, OperationFailedError):
                result.record_failure(record.url, outcome.error)
            elif isinstance(outcome, BaseException):
                logger.error(f"Unexpected error processing {record.url}: {outcome}")
                unexpected = unexpected or outcome
            else:
                result.succeeded_urls.append(record.url)

        result.completed_at = utc_now()
        if unexpected is not None:
            raise unexpected

        logger.info(
            f"{self.phase.value} finished: {len(result.succeeded_urls)} succeeded, "
            f"{result.failed_count} failed"
        )
        return result

    async def _process_with_semaphore(
        self, semaphore: asyncio.Semaphore, record: SourceRecord
    ) -> SourceRecord:
        async with semaphore:
            return await self.process(record)

    async def process(self, record: SourceRecord) -> SourceRecord:
        """Run the operation for one record, retrying until it succeeds or gives up."""
        url = record.url
        current = self.registry.get_source(url)
        if current is None:
            current = record

        if current.status == SourceStatus.FAILED:
            # Resume: return the record to the start of this phase first
            current = self.registry.update_source(
                url, {"status": PHASE_ENTRY_STATUS[self.phase]}
            )
        current = self.registry.update_source(
            url, {"status": PHASE_IN_PROGRESS_STATUS[self.phase]}
        )

        max_attempts = self.retry_policy.max_attempts
        last_error: Optional[SourceError] = None
        attempt = 0

        for attempt in range(1, max_attempts + 1):
            try:
                output = await asyncio.wait_for(
                    self.operation(current, attempt), timeout=self.attempt_timeout
                )
            except Exception as e:
                last_error = build_source_error(e, self.phase, attempt)
                logger.warning(
                    f"{self.phase.value} attempt {attempt}/{max_attempts} failed for {url}: "
                    f"[{last_error.code}] {last_error.message}"
                )
                if not getattr(e, "retryable", True):
                    break
                if self.retry_policy.should_retry(attempt):
                    delay = self.retry_policy.delay_for(attempt)
                    logger.debug(f"Retrying {url} in {delay:.2f}s")
                    await self.sleep(delay)
                continue

            return self._apply_success(url, output)

        final_error = last_error.model_copy(
            update={"retry_count": attempt, "phase": self.phase, "timestamp": utc_now()}
        )
        self.registry.update_source(url, {"status": SourceStatus.FAILED, "error": final_error})
        raise OperationFailedError(url, self.phase, final_error)

    def _apply_success(
        self, url: str, output: Union[PhaseMetadataBase, OperationOutput]
    ) -> SourceRecord:
        if not isinstance(output, OperationOutput):
            output = OperationOutput(metadata=output)

        updates: Dict[str, Any] = dict(output.updates)
        updates.update(
            {
                "status": PHASE_SUCCESS_STATUS[self.phase],
                PHASE_TIMESTAMP_FIELD[self.phase]: utc_now(),
                "error": None,
                "phase_metadata": {self.phase.value: output.metadata},
            }
        )
        return self.registry.update_source(url, updates)
