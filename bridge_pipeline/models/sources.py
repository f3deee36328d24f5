"""Source records and the unified pipeline state.

A source record is one trackable unit of ingested documentation, identified by
its URL. Each pipeline phase advances the record along a small status machine
and attaches a metadata payload tagged with the phase that produced it:

    discovered -> collecting -> collected -> distilling -> distilled
               -> packaging -> packaged -> bundling -> bundled

``failed`` is reachable from every in-flight status (collecting, distilling,
packaging, bundling). A failed record only leaves ``failed`` through a resume,
which returns it to the entry status of the phase it failed in.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class SourceStatus(str, Enum):
    """Lifecycle status of a source record."""

    DISCOVERED = "discovered"
    COLLECTING = "collecting"
    COLLECTED = "collected"
    DISTILLING = "distilling"
    DISTILLED = "distilled"
    PACKAGING = "packaging"
    PACKAGED = "packaged"
    BUNDLING = "bundling"
    BUNDLED = "bundled"
    FAILED = "failed"


class PipelinePhase(str, Enum):
    """Pipeline phases in execution order."""

    DISCOVERY = "discovery"
    COLLECTION = "collection"
    DISTILLATION = "distillation"
    PACKAGING = "packaging"
    BUNDLING = "bundling"


class SourceType(str, Enum):
    """Kind of documentation a source provides."""

    PRIMER = "primer"
    BLOG_POST = "blog_post"
    CHANGELOG = "changelog"
    GUIDE = "guide"
    DOCUMENTATION = "documentation"
    LOCAL_DOCUMENT = "local_document"


class LoaderType(str, Enum):
    """Mod loader a source is about."""

    VANILLA = "vanilla"
    FABRIC = "fabric"
    NEOFORGE = "neoforge"
    FORGE = "forge"


class Priority(str, Enum):
    """Processing priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Provenance(str, Enum):
    """Who produced a phase metadata payload."""

    PIPELINE = "pipeline"
    OUT_OF_BAND = "out_of_band"


PHASE_ORDER: List[PipelinePhase] = list(PipelinePhase)

STATUS_ORDER: List[SourceStatus] = [
    SourceStatus.DISCOVERED,
    SourceStatus.COLLECTING,
    SourceStatus.COLLECTED,
    SourceStatus.DISTILLING,
    SourceStatus.DISTILLED,
    SourceStatus.PACKAGING,
    SourceStatus.PACKAGED,
    SourceStatus.BUNDLING,
    SourceStatus.BUNDLED,
]

PRIORITY_RANK: Dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}

# Status a record must hold before a phase may pick it up
PHASE_ENTRY_STATUS: Dict[PipelinePhase, SourceStatus] = {
    PipelinePhase.COLLECTION: SourceStatus.DISCOVERED,
    PipelinePhase.DISTILLATION: SourceStatus.COLLECTED,
    PipelinePhase.PACKAGING: SourceStatus.DISTILLED,
    PipelinePhase.BUNDLING: SourceStatus.PACKAGED,
}

PHASE_IN_PROGRESS_STATUS: Dict[PipelinePhase, SourceStatus] = {
    PipelinePhase.COLLECTION: SourceStatus.COLLECTING,
    PipelinePhase.DISTILLATION: SourceStatus.DISTILLING,
    PipelinePhase.PACKAGING: SourceStatus.PACKAGING,
    PipelinePhase.BUNDLING: SourceStatus.BUNDLING,
}

PHASE_SUCCESS_STATUS: Dict[PipelinePhase, SourceStatus] = {
    PipelinePhase.DISCOVERY: SourceStatus.DISCOVERED,
    PipelinePhase.COLLECTION: SourceStatus.COLLECTED,
    PipelinePhase.DISTILLATION: SourceStatus.DISTILLED,
    PipelinePhase.PACKAGING: SourceStatus.PACKAGED,
    PipelinePhase.BUNDLING: SourceStatus.BUNDLED,
}

PHASE_TIMESTAMP_FIELD: Dict[PipelinePhase, str] = {
    PipelinePhase.DISCOVERY: "discovered_at",
    PipelinePhase.COLLECTION: "collected_at",
    PipelinePhase.DISTILLATION: "distilled_at",
    PipelinePhase.PACKAGING: "packaged_at",
    PipelinePhase.BUNDLING: "bundled_at",
}

IN_FLIGHT_STATUSES: FrozenSet[SourceStatus] = frozenset(PHASE_IN_PROGRESS_STATUS.values())

ALLOWED_TRANSITIONS: Dict[SourceStatus, FrozenSet[SourceStatus]] = {
    SourceStatus.DISCOVERED: frozenset({SourceStatus.COLLECTING}),
    SourceStatus.COLLECTING: frozenset({SourceStatus.COLLECTED, SourceStatus.FAILED}),
    # collected -> distilled is only taken by out-of-band producers
    SourceStatus.COLLECTED: frozenset({SourceStatus.DISTILLING, SourceStatus.DISTILLED}),
    SourceStatus.DISTILLING: frozenset({SourceStatus.DISTILLED, SourceStatus.FAILED}),
    SourceStatus.DISTILLED: frozenset({SourceStatus.PACKAGING}),
    SourceStatus.PACKAGING: frozenset({SourceStatus.PACKAGED, SourceStatus.FAILED}),
    SourceStatus.PACKAGED: frozenset({SourceStatus.BUNDLING}),
    SourceStatus.BUNDLING: frozenset({SourceStatus.BUNDLED, SourceStatus.FAILED}),
    SourceStatus.BUNDLED: frozenset(),
    SourceStatus.FAILED: frozenset(),
}


def can_transition(
    current: SourceStatus,
    target: SourceStatus,
    failed_phase: Optional[PipelinePhase] = None,
) -> bool:
    """Check whether a record may move from ``current`` to ``target``."""
    if current == target:
        return True
    if current == SourceStatus.FAILED:
        return target == PHASE_ENTRY_STATUS.get(failed_phase or PipelinePhase.COLLECTION)
    return target in ALLOWED_TRANSITIONS[current]


def status_rank(status: SourceStatus, failed_phase: Optional[PipelinePhase] = None) -> int:
    """Position of a status along the pipeline.

    A failed record ranks with the in-flight status of the phase it failed in.
    """
    if status == SourceStatus.FAILED:
        phase = failed_phase or PipelinePhase.COLLECTION
        in_flight = PHASE_IN_PROGRESS_STATUS.get(phase, SourceStatus.COLLECTING)
        return STATUS_ORDER.index(in_flight)
    return STATUS_ORDER.index(status)


class SourceError(BaseModel):
    """Structured error recorded on a source after its phase gave up."""

    code: str
    message: str
    timestamp: str = Field(default_factory=utc_now)
    retry_count: int = Field(default=0, ge=0)
    phase: Optional[PipelinePhase] = None
    http_status: Optional[int] = None

    @field_validator("phase", mode="before")
    @classmethod
    def _coerce_phase(cls, value: Any) -> Any:
        # Older snapshots stored a status name ("failed") here
        if value is None or isinstance(value, PipelinePhase):
            return value
        try:
            return PipelinePhase(value)
        except ValueError:
            return None


# ---------------------------------------------------------------------------
# Phase metadata (tagged by phase)
# ---------------------------------------------------------------------------


class PhaseMetadataBase(BaseModel):
    provenance: Provenance = Provenance.PIPELINE
    recorded_at: str = Field(default_factory=utc_now)


class DiscoveryMetadata(PhaseMetadataBase):
    phase: Literal["discovery"] = "discovery"
    discovered_by: Optional[str] = None
    discovery_source: Optional[str] = None


class CollectionMetadata(PhaseMetadataBase):
    phase: Literal["collection"] = "collection"
    status_code: Optional[int] = None
    content_type: Optional[str] = None
    content_length: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    size_bytes: int = Field(default=0, ge=0)
    size_kb: float = Field(default=0.0, ge=0.0)
    collection_attempt: int = Field(default=1, ge=1)
    final_url: Optional[str] = None
    content_path: Optional[str] = None

    @field_validator("content_length", mode="before")
    @classmethod
    def _stringify_length(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class TokenUsage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)


class DistillationMetadata(PhaseMetadataBase):
    phase: Literal["distillation"] = "distillation"
    agent: Optional[str] = None
    model: Optional[str] = None
    processing_duration_ms: int = Field(default=0, ge=0)
    source_checksum: Optional[str] = None
    output_path: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    validation_passed: bool = True
    skipped: bool = False
    reason: Optional[str] = None


class PackagingMetadata(PhaseMetadataBase):
    phase: Literal["packaging"] = "packaging"
    package_path: Optional[str] = None
    package_version: Optional[str] = None
    version_group: Optional[str] = None


class BundlingMetadata(PhaseMetadataBase):
    phase: Literal["bundling"] = "bundling"
    bundle_path: Optional[str] = None
    archive_path: Optional[str] = None


PhaseMetadata = Annotated[
    Union[
        DiscoveryMetadata,
        CollectionMetadata,
        DistillationMetadata,
        PackagingMetadata,
        BundlingMetadata,
    ],
    Field(discriminator="phase"),
]

# Flat per-phase fields written by older snapshots
_LEGACY_METADATA_FIELDS = {
    "collection_metadata": PipelinePhase.COLLECTION,
    "distillation_metadata": PipelinePhase.DISTILLATION,
    "packaging_metadata": PipelinePhase.PACKAGING,
    "bundling_metadata": PipelinePhase.BUNDLING,
}


class ProcessingHints(BaseModel):
    """Per-source hints supplied by discovery."""

    skip_distillation: bool = False
    custom_prompt: Optional[str] = None
    expected_categories: List[str] = Field(default_factory=list)


class SourceRecord(BaseModel):
    """A single trackable source, identified by URL."""

    url: str
    status: SourceStatus = SourceStatus.DISCOVERED
    title: Optional[str] = None
    source_type: SourceType = SourceType.DOCUMENTATION
    loader_type: Optional[LoaderType] = None
    minecraft_version: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    tags: List[str] = Field(default_factory=list)
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    checksum: Optional[str] = None

    discovered_at: Optional[str] = None
    collected_at: Optional[str] = None
    distilled_at: Optional[str] = None
    packaged_at: Optional[str] = None
    bundled_at: Optional[str] = None

    error: Optional[SourceError] = None
    phase_metadata: Dict[str, PhaseMetadata] = Field(default_factory=dict)
    processing_hints: Optional[ProcessingHints] = None

    parent_source: Optional[str] = None
    related_sources: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _lift_legacy_metadata(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if not any(key in data for key in _LEGACY_METADATA_FIELDS):
            return data

        data = dict(data)
        phase_metadata = dict(data.get("phase_metadata") or {})
        for key, phase in _LEGACY_METADATA_FIELDS.items():
            payload = data.pop(key, None)
            if isinstance(payload, dict) and phase.value not in phase_metadata:
                payload = {k: v for k, v in payload.items() if k != "phase"}
                phase_metadata[phase.value] = {**payload, "phase": phase.value}
        data["phase_metadata"] = phase_metadata
        return data

    @model_validator(mode="after")
    def _check_metadata_tags(self) -> "SourceRecord":
        for key, payload in self.phase_metadata.items():
            if payload.phase != key:
                raise ValueError(
                    f"Metadata stored under '{key}' is tagged for phase '{payload.phase}'"
                )
        return self

    @property
    def failed_phase(self) -> Optional[PipelinePhase]:
        """Phase a failed record failed in (collection when unknown)."""
        if self.status != SourceStatus.FAILED:
            return None
        if self.error and self.error.phase:
            return self.error.phase
        return PipelinePhase.COLLECTION

    @property
    def rank(self) -> int:
        return status_rank(self.status, self.failed_phase)

    def metadata_for(self, phase: PipelinePhase) -> Optional[PhaseMetadataBase]:
        return self.phase_metadata.get(phase.value)

    def is_out_of_band(self, phase: PipelinePhase) -> bool:
        """Whether another path already produced this phase's result."""
        payload = self.metadata_for(phase)
        return payload is not None and payload.provenance == Provenance.OUT_OF_BAND


class PhaseStats(BaseModel):
    """Statistics from the last run of a phase."""

    total_sources: int = Field(default=0, ge=0)
    succeeded_sources: int = Field(default=0, ge=0)
    failed_sources: int = Field(default=0, ge=0)
    skipped_sources: int = Field(default=0, ge=0)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: float = Field(default=0.0, ge=0.0)
    success_rate: float = Field(default=0.0, ge=0.0, le=100.0)
    warnings: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


def _empty_phase_counts() -> Dict[str, int]:
    return {status.value: 0 for status in SourceStatus}


class PipelineMetadata(BaseModel):
    """Aggregate counts derived from the source map."""

    total_sources: int = Field(default=0, ge=0)
    phase_counts: Dict[str, int] = Field(default_factory=_empty_phase_counts)
    completion_percentage: float = Field(default=0.0, ge=0.0, le=100.0)

    @classmethod
    def tally(cls, sources: Dict[str, SourceRecord]) -> "PipelineMetadata":
        counts = _empty_phase_counts()
        for record in sources.values():
            counts[record.status.value] += 1

        total = len(sources)
        completed = counts[SourceStatus.BUNDLED.value]
        percentage = round(completed / total * 100, 2) if total else 0.0
        return cls(total_sources=total, phase_counts=counts, completion_percentage=percentage)


class PipelineState(BaseModel):
    """The persisted snapshot: every source plus run metadata."""

    sources: Dict[str, SourceRecord] = Field(default_factory=dict)
    metadata: PipelineMetadata = Field(default_factory=PipelineMetadata)
    stats: Dict[str, PhaseStats] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_identity(self) -> "PipelineState":
        for key, record in self.sources.items():
            if key != record.url:
                raise ValueError(f"Source keyed '{key}' carries url '{record.url}'")
        return self

    def refresh_metadata(self) -> PipelineMetadata:
        self.metadata = PipelineMetadata.tally(self.sources)
        return self.metadata
