"""Pipeline orchestrator sequencing discovery, collection, distillation, packaging and bundling."""

import asyncio
import hashlib
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from ..core.config import settings
from ..models.sources import (
    PHASE_ENTRY_STATUS,
    PHASE_IN_PROGRESS_STATUS,
    PHASE_ORDER,
    PHASE_SUCCESS_STATUS,
    PHASE_TIMESTAMP_FIELD,
    BundlingMetadata,
    CollectionMetadata,
    DistillationMetadata,
    PackagingMetadata,
    PipelinePhase,
    Provenance,
    SourceError,
    SourceRecord,
    SourceStatus,
    status_rank,
    utc_now,
)
from .collection.collector import HttpContentCollector
from .discovery.base import BaseDiscoverer
from .discovery.direct_urls import DirectUrlDiscoverer
from .distillation.distiller import DistillationError, OpenAIDistiller
from .executor import OperationOutput, PhaseExecutor, PhaseRunResult
from .filters import FilterCriteria, select_eligible
from .packaging.bundler import ArchiveBundler
from .packaging.packager import CollaboratorOutcome, VersionPackager
from .registry import SourceRegistry
from .retry import RetryPolicy
from .storage import ContentStore
from .validation import ValidationGate

logger = logging.getLogger(__name__)

# Phases preceded by a check for unresolved failed sources
PRIOR_FAILURE_CHECKED = {
    PipelinePhase.COLLECTION,
    PipelinePhase.PACKAGING,
    PipelinePhase.BUNDLING,
}


class PipelineConfigurationError(Exception):
    """The requested run cannot start from the current pipeline state."""


class PipelineOrchestrator:
    """Orchestrates the complete pipeline from discovery to the final bundle.

    Each phase selects eligible records, processes them, records statistics,
    saves the snapshot and only then asks the validation gate whether the
    pipeline may continue.
    """

    def __init__(
        self,
        registry: Optional[SourceRegistry] = None,
        store: Optional[ContentStore] = None,
        discoverer: Optional[BaseDiscoverer] = None,
        collector=None,
        distiller=None,
        packager=None,
        bundler=None,
        gate: Optional[ValidationGate] = None,
        collection_policy: Optional[RetryPolicy] = None,
        distillation_policy: Optional[RetryPolicy] = None,
        collection_concurrency: Optional[int] = None,
        distillation_concurrency: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry or SourceRegistry()
        self.store = store or ContentStore()
        self.discoverer = discoverer or DirectUrlDiscoverer()
        self.collector = collector or HttpContentCollector()
        self.distiller = distiller or OpenAIDistiller()
        self.packager = packager or VersionPackager()
        self.bundler = bundler or ArchiveBundler()
        self.gate = gate or ValidationGate()

        self.collection_policy = collection_policy or RetryPolicy.from_settings(
            settings.collection_max_retries
        )
        self.distillation_policy = distillation_policy or RetryPolicy.from_settings(
            settings.distillation_max_retries
        )
        self.collection_concurrency = (
            collection_concurrency or settings.collection_max_concurrency
        )
        self.distillation_concurrency = (
            distillation_concurrency or settings.distillation_max_concurrency
        )
        self.sleep = sleep
        self._loaded = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def ensure_loaded(self) -> None:
        """Load the snapshot and absorb legacy files once per orchestrator."""
        if self._loaded:
            return
        self.registry.load()
        absorbed = self.registry.migrate_legacy()
        if absorbed:
            logger.info(f"Absorbed {absorbed} sources from legacy tracking files")
        self._loaded = True

    def _finish_phase(self, result: PhaseRunResult, force_proceed: bool) -> Dict[str, Any]:
        """Record statistics, save, then run the validation gate."""
        phase = result.phase
        self.registry.record_phase_stats(phase, result.to_stats())
        self.registry.save()

        decision = self.gate.validate(result, override=force_proceed)
        result.warnings.extend(decision.warnings)
        if result.warnings:
            for warning in result.warnings:
                self.registry.add_warning(warning)
            self.registry.record_phase_stats(phase, result.to_stats())
            self.registry.save()

        return self._summarize(result)

    @staticmethod
    def _summarize(result: PhaseRunResult) -> Dict[str, Any]:
        return {
            "phase": result.phase.value,
            "considered": result.considered_count,
            "succeeded": len(result.succeeded_urls),
            "failed": result.failed_count,
            "skipped": len(result.skipped_urls),
            "failed_urls": list(result.failed_urls),
            "warnings": list(result.warnings),
            "details": dict(result.details),
        }

    def _nothing_to_do(self, phase: PipelinePhase, warnings: Iterable[str] = ()) -> Dict[str, Any]:
        message = f"No eligible sources for {phase.value}; nothing to do"
        logger.warning(message)
        result = PhaseRunResult(phase=phase, completed_at=utc_now())
        result.warnings.extend(warnings)
        result.warnings.append(message)
        return self._summarize(result)

    def _select(
        self,
        phase: PipelinePhase,
        criteria: Optional[FilterCriteria],
        resume: bool,
    ) -> List[SourceRecord]:
        criteria = criteria or FilterCriteria()
        if resume and not criteria.include_failed:
            criteria = replace(criteria, include_failed=True)
        return select_eligible(self.registry.state, phase, criteria)

    def _check_prior_failures(
        self, phase: PipelinePhase, records: Sequence[SourceRecord], force_proceed: bool
    ) -> List[str]:
        if phase not in PRIOR_FAILURE_CHECKED:
            return []
        retrying = {r.url for r in records if r.status == SourceStatus.FAILED}
        decision = self.gate.check_prior_failures(
            self.registry, phase, force_proceed=force_proceed, retrying=retrying
        )
        return list(decision.warnings)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def run_discovery(self, force_proceed: bool = False) -> Dict[str, Any]:
        """Discover sources and register the new ones."""
        self.ensure_loaded()
        self.registry.annotate("current_phase", PipelinePhase.DISCOVERY.value)
        logger.info("Starting discovery phase")

        discovery = await self.discoverer.run_discovery_job()
        known = [url for url in discovery.sources if url in self.registry.state.sources]
        added = self.registry.add_sources(discovery.sources.values())

        result = PhaseRunResult(
            phase=PipelinePhase.DISCOVERY,
            considered_urls=list(discovery.sources),
            succeeded_urls=list(discovery.sources),
        )
        result.skipped_urls = known
        result.details = {**discovery.stats, "new_sources": added}
        result.completed_at = utc_now()

        logger.info(f"Discovery found {len(discovery.sources)} sources, {added} new")
        return self._finish_phase(result, force_proceed)

    async def run_collection(
        self,
        criteria: Optional[FilterCriteria] = None,
        resume: bool = False,
        force_proceed: bool = False,
    ) -> Dict[str, Any]:
        """Download content for discovered sources."""
        executor = PhaseExecutor(
            self.registry,
            PipelinePhase.COLLECTION,
            self._collect_record,
            retry_policy=self.collection_policy,
            max_concurrency=self.collection_concurrency,
            attempt_timeout=settings.collection_timeout,
            sleep=self.sleep,
        )
        return await self._run_executor_phase(executor, criteria, resume, force_proceed)

    async def run_distillation(
        self,
        criteria: Optional[FilterCriteria] = None,
        resume: bool = False,
        force_proceed: bool = False,
    ) -> Dict[str, Any]:
        """Distill collected content into structured records."""
        self.ensure_loaded()
        reconciled = self._reconcile_distillation()
        if reconciled:
            self.registry.save()

        executor = PhaseExecutor(
            self.registry,
            PipelinePhase.DISTILLATION,
            self._distill_record,
            retry_policy=self.distillation_policy,
            max_concurrency=self.distillation_concurrency,
            attempt_timeout=settings.distillation_timeout,
            sleep=self.sleep,
        )
        return await self._run_executor_phase(
            executor, criteria, resume, force_proceed, out_of_band=reconciled
        )

    async def _run_executor_phase(
        self,
        executor: PhaseExecutor,
        criteria: Optional[FilterCriteria],
        resume: bool,
        force_proceed: bool,
        out_of_band: Sequence[str] = (),
    ) -> Dict[str, Any]:
        self.ensure_loaded()
        phase = executor.phase
        records = self._select(phase, criteria, resume)
        warnings = self._check_prior_failures(phase, records, force_proceed)

        if not records:
            return self._nothing_to_do(phase, warnings)

        self.registry.annotate("current_phase", phase.value)
        logger.info(f"Starting {phase.value} phase with {len(records)} sources")

        result = await executor.run(records)
        result.warnings = warnings + result.warnings
        if out_of_band:
            result.details["out_of_band"] = list(out_of_band)
        return self._finish_phase(result, force_proceed)

    async def run_packaging(
        self,
        criteria: Optional[FilterCriteria] = None,
        resume: bool = False,
        force_proceed: bool = False,
    ) -> Dict[str, Any]:
        """Package distilled sources into a versioned package directory."""

        async def invoke(records: Sequence[SourceRecord]) -> List[CollaboratorOutcome]:
            return [await self.packager.package(records, self.store)]

        return await self._run_batch_phase(
            PipelinePhase.PACKAGING, criteria, resume, force_proceed, invoke, PackagingMetadata
        )

    async def run_bundling(
        self,
        criteria: Optional[FilterCriteria] = None,
        resume: bool = False,
        force_proceed: bool = False,
    ) -> Dict[str, Any]:
        """Archive packaged sources into the distributable bundle."""

        async def invoke(records: Sequence[SourceRecord]) -> List[CollaboratorOutcome]:
            by_package: Dict[str, List[SourceRecord]] = {}
            for record in records:
                metadata = record.metadata_for(PipelinePhase.PACKAGING)
                package_path = getattr(metadata, "package_path", None) or str(
                    self.packager.package_path
                )
                by_package.setdefault(package_path, []).append(record)

            outcomes = []
            for package_path, group in by_package.items():
                outcome = await self.bundler.bundle(group, Path(package_path))
                if not outcome.succeeded:
                    for record in group:
                        outcome.failed_urls.setdefault(record.url, outcome.error or "")
                outcomes.append(outcome)
            return outcomes

        return await self._run_batch_phase(
            PipelinePhase.BUNDLING, criteria, resume, force_proceed, invoke, BundlingMetadata
        )

    async def _run_batch_phase(
        self,
        phase: PipelinePhase,
        criteria: Optional[FilterCriteria],
        resume: bool,
        force_proceed: bool,
        invoke: Callable[[Sequence[SourceRecord]], Awaitable[List[CollaboratorOutcome]]],
        metadata_cls,
    ) -> Dict[str, Any]:
        """Run one collaborator call over every eligible record and apply its outcome."""
        self.ensure_loaded()
        records = self._select(phase, criteria, resume)
        warnings = self._check_prior_failures(phase, records, force_proceed)

        if not records:
            return self._nothing_to_do(phase, warnings)

        self.registry.annotate("current_phase", phase.value)
        logger.info(f"Starting {phase.value} phase with {len(records)} sources")

        result = PhaseRunResult(phase=phase, considered_urls=[r.url for r in records])
        result.warnings.extend(warnings)

        for record in records:
            if record.status == SourceStatus.FAILED:
                self.registry.update_source(record.url, {"status": PHASE_ENTRY_STATUS[phase]})
            self.registry.update_source(record.url, {"status": PHASE_IN_PROGRESS_STATUS[phase]})

        try:
            outcomes = await invoke(records)
        except Exception as e:
            logger.error(f"{phase.value} collaborator failed: {e}")
            outcomes = [CollaboratorOutcome(status="failed", error=str(e) or type(e).__name__)]

        failed_urls: Dict[str, str] = {}
        record_details: Dict[str, Dict[str, Any]] = {}
        for outcome in outcomes:
            if not outcome.succeeded and not outcome.failed_urls:
                for record in records:
                    failed_urls.setdefault(record.url, outcome.error or "")
            failed_urls.update(outcome.failed_urls)
            record_details.update(outcome.record_details)
            result.details.update(outcome.details)

        for record in records:
            url = record.url
            if url in failed_urls or url not in record_details:
                error = SourceError(
                    code=f"{phase.value}_error",
                    message=failed_urls.get(url) or f"{phase.value} produced no output",
                    retry_count=1,
                    phase=phase,
                )
                self.registry.update_source(url, {"status": SourceStatus.FAILED, "error": error})
                result.record_failure(url, error)
                continue

            self.registry.update_source(
                url,
                {
                    "status": PHASE_SUCCESS_STATUS[phase],
                    PHASE_TIMESTAMP_FIELD[phase]: utc_now(),
                    "error": None,
                    "phase_metadata": {phase.value: metadata_cls(**record_details[url])},
                },
            )
            result.succeeded_urls.append(url)

        result.completed_at = utc_now()
        return self._finish_phase(result, force_proceed)

    # ------------------------------------------------------------------
    # Per-record operations
    # ------------------------------------------------------------------

    async def _collect_record(self, record: SourceRecord, attempt: int) -> CollectionMetadata:
        etag = last_modified = None
        previous = record.metadata_for(PipelinePhase.COLLECTION)
        if previous is not None and self.store.has_collected(record):
            etag, last_modified = previous.etag, previous.last_modified

        collected = await self.collector.collect(
            record.url, etag=etag, last_modified=last_modified
        )
        if collected.not_modified:
            logger.info(f"{record.url} unchanged since last collection, keeping stored content")
            path = self.store.stored_collected_path(record)
            content = self.store.read_collected(record)
        else:
            content = collected.content
            path = self.store.save_collected(record, content)
        size_bytes = len(content.encode("utf-8"))

        response_fields = {
            key: value
            for key, value in collected.metadata.items()
            if key in CollectionMetadata.model_fields and key not in ("phase", "provenance")
        }
        if collected.not_modified and previous is not None:
            # A 304 carries no entity headers; keep the ones from the stored copy
            for key in ("content_type", "content_length"):
                response_fields.setdefault(key, getattr(previous, key))
        return CollectionMetadata(
            **response_fields,
            size_bytes=size_bytes,
            size_kb=round(size_bytes / 1024, 2),
            collection_attempt=attempt,
            content_path=str(path),
        )

    async def _distill_record(self, record: SourceRecord, attempt: int) -> OperationOutput:
        started = time.monotonic()
        try:
            content = self.store.read_collected(record)
        except OSError as e:
            raise DistillationError(
                f"Collected content missing for {record.url}: {e}", code="missing_content"
            ) from e

        output = await self.distiller.distill(record, content)
        path = self.store.save_distilled(record.url, output.to_document(record))

        updates: Dict[str, Any] = {}
        if not record.minecraft_version and output.content.minecraft_version:
            updates["minecraft_version"] = output.content.minecraft_version

        metadata = DistillationMetadata(
            agent=type(self.distiller).__name__,
            model=output.model,
            processing_duration_ms=int((time.monotonic() - started) * 1000),
            source_checksum=hashlib.sha256(content.encode("utf-8")).hexdigest()[:16],
            output_path=str(path),
            token_usage=output.token_usage,
            confidence_score=output.confidence_score,
            validation_passed=output.validation_passed,
        )
        return OperationOutput(metadata=metadata, updates=updates)

    def _reconcile_distillation(self) -> List[str]:
        """Mark collected sources whose distillation happened elsewhere.

        Sources with distilled output already on disk, or with a
        ``skip_distillation`` hint, move straight to distilled with
        out-of-band metadata so no model call is made for them.
        """
        candidates = [
            record
            for record in self.registry.state.sources.values()
            if record.status == SourceStatus.COLLECTED
        ]
        existing = self.store.existing_distilled_urls(record.url for record in candidates)

        reconciled = []
        for record in candidates:
            if record.url in existing:
                metadata = DistillationMetadata(
                    provenance=Provenance.OUT_OF_BAND,
                    output_path=str(self.store.distilled_path(record.url)),
                    reason="distilled output already present",
                )
            elif record.processing_hints and record.processing_hints.skip_distillation:
                metadata = DistillationMetadata(
                    provenance=Provenance.OUT_OF_BAND,
                    skipped=True,
                    reason="skip_distillation hint",
                )
            else:
                continue

            self.registry.update_source(
                record.url,
                {
                    "status": SourceStatus.DISTILLED,
                    "distilled_at": record.distilled_at or utc_now(),
                    "phase_metadata": {PipelinePhase.DISTILLATION.value: metadata},
                },
            )
            reconciled.append(record.url)
            logger.info(f"Skipping distillation for {record.url}: {metadata.reason}")

        return reconciled

    # ------------------------------------------------------------------
    # Full pipeline
    # ------------------------------------------------------------------

    def _check_skip_allowed(self, phase: PipelinePhase) -> None:
        """Skipping a phase requires state that the phase would have produced."""
        sources = self.registry.state.sources.values()
        if phase == PipelinePhase.DISCOVERY:
            if not sources:
                raise PipelineConfigurationError(
                    "Cannot skip discovery: the pipeline state has no sources"
                )
            return

        required = status_rank(PHASE_SUCCESS_STATUS[phase])
        if not any(
            record.status != SourceStatus.FAILED and record.rank >= required
            for record in sources
        ):
            raise PipelineConfigurationError(
                f"Cannot skip {phase.value}: no sources have reached "
                f"{PHASE_SUCCESS_STATUS[phase].value}"
            )

    async def run_full_pipeline(
        self,
        skip_phases: Optional[Iterable[PipelinePhase]] = None,
        force_proceed: bool = False,
        criteria: Optional[FilterCriteria] = None,
        resume: bool = False,
    ) -> Dict[str, Any]:
        """Run every phase in order, honouring skips and the force-proceed override."""
        skip = set(skip_phases or [])
        self.ensure_loaded()
        logger.info("Starting full pipeline")

        pipeline_results: Dict[str, Any] = {
            "pipeline_type": "full",
            "started_at": datetime.now(timezone.utc).isoformat(),
            "execution_id": self.registry.state.context.get("execution_id"),
            "skipped_phases": [p.value for p in PHASE_ORDER if p in skip],
            "phases": {},
            "success": False,
        }
        self.registry.annotate("skip_phases", pipeline_results["skipped_phases"])
        self.registry.annotate("force_proceed", force_proceed)

        runners = {
            PipelinePhase.DISCOVERY: lambda: self.run_discovery(force_proceed=force_proceed),
            PipelinePhase.COLLECTION: lambda: self.run_collection(criteria, resume, force_proceed),
            PipelinePhase.DISTILLATION: lambda: self.run_distillation(
                criteria, resume, force_proceed
            ),
            PipelinePhase.PACKAGING: lambda: self.run_packaging(None, resume, force_proceed),
            PipelinePhase.BUNDLING: lambda: self.run_bundling(None, resume, force_proceed),
        }

        try:
            for phase in PHASE_ORDER:
                if phase in skip:
                    self._check_skip_allowed(phase)
                    logger.info(f"Skipping {phase.value} phase")
                    continue
                pipeline_results["phases"][phase.value] = await runners[phase]()

            pipeline_results["completed_at"] = datetime.now(timezone.utc).isoformat()
            pipeline_results["success"] = True
            pipeline_results["completion_percentage"] = (
                self.registry.state.refresh_metadata().completion_percentage
            )
            logger.info(
                f"Full pipeline completed: {pipeline_results['completion_percentage']}% bundled"
            )

        except Exception as e:
            logger.error(f"Full pipeline failed: {e}")
            pipeline_results["error"] = str(e)
            pipeline_results["completed_at"] = datetime.now(timezone.utc).isoformat()
            raise

        return pipeline_results

    def get_pipeline_status(self) -> Dict[str, Any]:
        """Summarize the current snapshot."""
        self.ensure_loaded()
        state = self.registry.state
        metadata = state.refresh_metadata()

        failed = []
        for record in state.sources.values():
            if record.status != SourceStatus.FAILED:
                continue
            failed.append(
                {
                    "url": record.url,
                    "phase": record.failed_phase.value if record.failed_phase else None,
                    "code": record.error.code if record.error else None,
                    "message": record.error.message if record.error else None,
                }
            )

        return {
            "state_file": str(self.registry.state_path),
            "execution_id": state.context.get("execution_id"),
            "last_updated": state.context.get("last_updated"),
            "current_phase": state.context.get("current_phase"),
            "total_sources": metadata.total_sources,
            "phase_counts": dict(metadata.phase_counts),
            "completion_percentage": metadata.completion_percentage,
            "stats": {phase: stats.model_dump(mode="json") for phase, stats in state.stats.items()},
            "failed_sources": failed,
            "warnings": list(state.context.get("warnings", [])),
        }
