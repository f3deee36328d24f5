"""Selection of the records a phase should process."""

from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from ..models.sources import (
    PHASE_ENTRY_STATUS,
    PRIORITY_RANK,
    LoaderType,
    PipelinePhase,
    PipelineState,
    Priority,
    SourceRecord,
    SourceStatus,
    SourceType,
)


@dataclass
class FilterCriteria:
    """Caller-supplied narrowing of the eligible set."""

    source_type: Optional[SourceType] = None
    loader_type: Optional[LoaderType] = None
    priority: Optional[Priority] = None
    min_relevance: Optional[float] = None
    urls: FrozenSet[str] = field(default_factory=frozenset)
    include_failed: bool = False

    def matches(self, record: SourceRecord) -> bool:
        if self.source_type and record.source_type != self.source_type:
            return False
        if self.loader_type and record.loader_type != self.loader_type:
            return False
        if self.priority and record.priority != self.priority:
            return False
        if self.min_relevance is not None and record.relevance_score < self.min_relevance:
            return False
        if self.urls and record.url not in self.urls:
            return False
        return True


def _sort_key(record: SourceRecord):
    return (PRIORITY_RANK[record.priority], -record.relevance_score, record.url)


def is_eligible(record: SourceRecord, phase: PipelinePhase, include_failed: bool = False) -> bool:
    """Whether ``record`` is waiting for ``phase``, ignoring caller criteria."""
    entry_status = PHASE_ENTRY_STATUS.get(phase)
    if entry_status is None:
        return False
    if record.is_out_of_band(phase):
        return False
    if record.status == entry_status:
        return True
    return (
        include_failed
        and record.status == SourceStatus.FAILED
        and record.failed_phase == phase
    )


def select_eligible(
    state: PipelineState,
    phase: PipelinePhase,
    criteria: Optional[FilterCriteria] = None,
) -> List[SourceRecord]:
    """Return copies of the records ``phase`` should process, in processing order.

    Records already handled out of band for the phase are never selected.
    Failed records are only selected when ``criteria.include_failed`` is set
    and they failed in this same phase.
    """
    criteria = criteria or FilterCriteria()
    selected = [
        record
        for record in state.sources.values()
        if is_eligible(record, phase, criteria.include_failed) and criteria.matches(record)
    ]
    selected.sort(key=_sort_key)
    return [record.model_copy(deep=True) for record in selected]
