"""Models package for Bridge Pipeline.

This package contains data models for:
- Source records and their per-phase metadata
- The unified pipeline state snapshot
"""

from .sources import (
    BundlingMetadata,
    CollectionMetadata,
    DiscoveryMetadata,
    DistillationMetadata,
    LoaderType,
    PackagingMetadata,
    PhaseStats,
    PipelineMetadata,
    PipelinePhase,
    PipelineState,
    Priority,
    ProcessingHints,
    Provenance,
    SourceError,
    SourceRecord,
    SourceStatus,
    SourceType,
    TokenUsage,
)

__all__ = [
    # Records
    "SourceRecord",
    "SourceError",
    "ProcessingHints",
    "SourceStatus",
    "SourceType",
    "LoaderType",
    "Priority",
    "PipelinePhase",
    "Provenance",
    # Phase metadata
    "DiscoveryMetadata",
    "CollectionMetadata",
    "DistillationMetadata",
    "PackagingMetadata",
    "BundlingMetadata",
    "TokenUsage",
    # State
    "PhaseStats",
    "PipelineMetadata",
    "PipelineState",
]
