"""
Test configuration and fixtures for Bridge Pipeline.
"""

import pytest

from bridge_pipeline.models.sources import SourceRecord, SourceStatus
from bridge_pipeline.pipelines.registry import SourceRegistry
from bridge_pipeline.pipelines.storage import ContentStore


@pytest.fixture
def make_record():
    """Factory for source records with sensible defaults."""

    def _make(url: str, status: SourceStatus = SourceStatus.DISCOVERED, **kwargs):
        return SourceRecord(url=url, status=status, **kwargs)

    return _make


@pytest.fixture
def state_path(tmp_path):
    """Snapshot location inside the test's temporary directory."""
    return tmp_path / "generated" / "pipeline-state.json"


@pytest.fixture
def registry(tmp_path, state_path):
    """Empty registry writing to a temporary snapshot."""
    return SourceRegistry(state_path=state_path, legacy_dir=tmp_path / "legacy")


@pytest.fixture
def content_store(tmp_path):
    """Content store rooted in the test's temporary directory."""
    return ContentStore(
        collected_dir=tmp_path / "collected-content",
        distilled_dir=tmp_path / "distilled-content",
    )


@pytest.fixture
def recorded_sleep():
    """Async sleep replacement that records requested delays instead of waiting."""
    delays = []

    async def _sleep(delay):
        delays.append(delay)

    _sleep.delays = delays
    return _sleep
