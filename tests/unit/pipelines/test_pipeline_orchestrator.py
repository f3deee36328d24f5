"""Tests for the pipeline orchestrator."""

import json
import zipfile
from unittest.mock import AsyncMock

import aiohttp
import pytest

from bridge_pipeline.models.sources import (
    CollectionMetadata,
    LoaderType,
    PipelinePhase,
    SourceError,
    SourceRecord,
    SourceStatus,
)
from bridge_pipeline.pipelines.collection.circuit_breaker import HostCircuitBreakers
from bridge_pipeline.pipelines.collection.collector import (
    CollectedContent,
    CollectionError,
    HttpContentCollector,
)
from bridge_pipeline.pipelines.discovery.direct_urls import DirectUrlDiscoverer
from bridge_pipeline.pipelines.distillation.distiller import DistillationOutput, DistilledContent
from bridge_pipeline.pipelines.filters import FilterCriteria
from bridge_pipeline.pipelines.orchestrator import (
    PipelineConfigurationError,
    PipelineOrchestrator,
)
from bridge_pipeline.pipelines.packaging.bundler import ArchiveBundler
from bridge_pipeline.pipelines.packaging.packager import VersionPackager
from bridge_pipeline.pipelines.registry import SnapshotCorruptedError, SourceRegistry
from bridge_pipeline.pipelines.retry import RetryPolicy
from bridge_pipeline.pipelines.storage import ContentStore
from bridge_pipeline.pipelines.validation import BlockingPipelineError, ValidationGate

URLS = [f"https://example.com/guide-{i}" for i in range(5)]


class FakeCollector:
    """Returns fixed content, failing for URLs in ``failing``."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def collect(self, url, etag=None, last_modified=None):
        self.calls.append(url)
        if url in self.failing:
            raise CollectionError(f"HTTP 503 for {url}", code="http_error", http_status=503)
        return CollectedContent(
            content=f"<html><main>Porting notes for {url}. {'x' * 80}</main></html>",
            metadata={"status_code": 200, "content_type": "text/html"},
        )


class FakeDistiller:
    """Returns one breaking change per source."""

    def __init__(self):
        self.calls = []

    async def distill(self, record, content):
        self.calls.append(record.url)
        return DistillationOutput(
            content=DistilledContent(
                minecraft_version="1.21.1",
                breaking_changes=[{"id": record.url, "title": "change"}],
                summary=f"Summary of {record.url}",
                confidence_score=0.8,
            ),
            model="fake-model",
        )


@pytest.fixture
def workspace(tmp_path):
    return tmp_path


@pytest.fixture
def collector():
    return FakeCollector()


@pytest.fixture
def distiller():
    return FakeDistiller()


@pytest.fixture
def build(workspace, recorded_sleep):
    """Factory creating orchestrators that share one workspace on disk."""

    def _build(collector, distiller, entries=None, **overrides):
        entries = entries if entries is not None else [
            {"url": url, "source_type": "guide", "loader_type": "neoforge"} for url in URLS
        ]
        kwargs = dict(
            registry=SourceRegistry(
                state_path=workspace / "pipeline-state.json", legacy_dir=workspace / "legacy"
            ),
            store=ContentStore(workspace / "collected", workspace / "distilled"),
            discoverer=DirectUrlDiscoverer(entries=entries),
            collector=collector,
            distiller=distiller,
            packager=VersionPackager(package_dir=workspace / "packages", version="1.0.0"),
            bundler=ArchiveBundler(bundle_dir=workspace / "bundles", bundle_name="test-bundle"),
            gate=ValidationGate(default_threshold=0.0),
            collection_policy=RetryPolicy(max_attempts=2, base_delay=0.5),
            distillation_policy=RetryPolicy(max_attempts=2, base_delay=0.5),
            sleep=recorded_sleep,
        )
        kwargs.update(overrides)
        return PipelineOrchestrator(**kwargs)

    return _build


def load_snapshot(workspace):
    registry = SourceRegistry(
        state_path=workspace / "pipeline-state.json", legacy_dir=workspace / "legacy"
    )
    return registry.load()


class TestFullPipeline:
    """Test end-to-end runs across every phase."""

    @pytest.mark.asyncio
    async def test_clean_run_bundles_everything(self, build, collector, distiller, workspace):
        orchestrator = build(collector, distiller)

        results = await orchestrator.run_full_pipeline()

        assert results["success"]
        assert results["completion_percentage"] == 100.0
        assert list(results["phases"]) == [
            "discovery",
            "collection",
            "distillation",
            "packaging",
            "bundling",
        ]
        assert (workspace / "bundles" / "test-bundle-v1.0.0.zip").exists()

        state = load_snapshot(workspace)
        assert state.metadata.phase_counts["bundled"] == 5
        assert sum(state.metadata.phase_counts.values()) == state.metadata.total_sources
        for record in state.sources.values():
            assert record.minecraft_version == "1.21.1"
            assert set(record.phase_metadata) == {
                "discovery",
                "collection",
                "distillation",
                "packaging",
                "bundling",
            }
            assert record.bundled_at is not None
        assert set(state.stats) == {p.value for p in PipelinePhase}

    @pytest.mark.asyncio
    async def test_collection_failures_block_the_pipeline(
        self, build, distiller, workspace, recorded_sleep
    ):
        """Two of five downloads fail: the run stops after collection with state saved."""
        collector = FakeCollector(failing=URLS[:2])
        orchestrator = build(collector, distiller)

        with pytest.raises(BlockingPipelineError) as exc_info:
            await orchestrator.run_full_pipeline()

        error = exc_info.value
        assert error.phase == PipelinePhase.COLLECTION
        assert error.failed_count == 2
        assert error.considered_count == 5
        assert sorted(error.failed_urls) == sorted(URLS[:2])
        assert distiller.calls == []
        assert recorded_sleep.delays == [0.5, 0.5]

        state = load_snapshot(workspace)
        assert state.metadata.phase_counts["collected"] == 3
        assert state.metadata.phase_counts["failed"] == 2
        assert state.stats["collection"].failed_sources == 2
        failed = state.sources[URLS[0]]
        assert failed.error.code == "http_error"
        assert failed.error.retry_count == 2
        assert failed.error.phase == PipelinePhase.COLLECTION

    @pytest.mark.asyncio
    async def test_resume_after_blocked_collection(self, build, distiller, workspace):
        """A later run with --resume retries only the failed sources."""
        with pytest.raises(BlockingPipelineError):
            await build(FakeCollector(failing=URLS[:2]), distiller).run_full_pipeline()

        collector = FakeCollector()
        orchestrator = build(collector, distiller)
        summary = await orchestrator.run_collection(resume=True)

        assert sorted(collector.calls) == sorted(URLS[:2])
        assert summary["succeeded"] == 2
        assert summary["failed"] == 0

        results = await orchestrator.run_full_pipeline(skip_phases=[PipelinePhase.DISCOVERY])
        assert results["completion_percentage"] == 100.0

    @pytest.mark.asyncio
    async def test_force_proceed_continues_with_survivors(self, build, distiller, workspace):
        orchestrator = build(FakeCollector(failing=URLS[:2]), distiller)

        results = await orchestrator.run_full_pipeline(force_proceed=True)

        assert results["success"]
        assert results["completion_percentage"] == 60.0
        assert sorted(distiller.calls) == sorted(URLS[2:])

        state = load_snapshot(workspace)
        assert state.metadata.phase_counts["bundled"] == 3
        assert state.metadata.phase_counts["failed"] == 2
        assert any("force proceed" in w for w in state.context["warnings"])
        assert state.context["force_proceed"] is True

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, build, collector, distiller, workspace):
        """A second run over a finished pipeline changes nothing."""
        await build(collector, distiller).run_full_pipeline()
        before = load_snapshot(workspace).sources

        results = await build(collector, distiller).run_full_pipeline()

        assert results["completion_percentage"] == 100.0
        assert len(collector.calls) == 5
        assert len(distiller.calls) == 5
        assert results["phases"]["collection"]["considered"] == 0
        assert results["phases"]["discovery"]["details"]["new_sources"] == 0
        after = load_snapshot(workspace).sources
        assert {u: r.status for u, r in after.items()} == {u: r.status for u, r in before.items()}


class NetworkFailingCollector(FakeCollector):
    """Fails with a connection error instead of an HTTP status."""

    async def collect(self, url, etag=None, last_modified=None):
        if url in self.failing:
            self.calls.append(url)
            raise aiohttp.ClientConnectionError(f"Connection refused: {url}")
        return await super().collect(url, etag=etag, last_modified=last_modified)


class TestScenarios:
    """Test the documented strict and force-proceed runs."""

    ENTRIES = [{"url": url, "loader_type": "neoforge"} for url in URLS[:3]]

    @pytest.mark.asyncio
    async def test_strict_gate_halts_on_network_failure(self, build, distiller, workspace):
        collector = NetworkFailingCollector(failing=[URLS[2]])

        with pytest.raises(BlockingPipelineError) as exc_info:
            await build(collector, distiller, entries=self.ENTRIES).run_full_pipeline()

        assert exc_info.value.failed_urls == [URLS[2]]
        state = load_snapshot(workspace)
        assert [state.sources[url].status for url in URLS[:3]] == [
            SourceStatus.COLLECTED,
            SourceStatus.COLLECTED,
            SourceStatus.FAILED,
        ]
        assert state.sources[URLS[2]].error.code == "network_error"

    @pytest.mark.asyncio
    async def test_force_proceed_excludes_failed_from_bundle(self, build, distiller, workspace):
        collector = NetworkFailingCollector(failing=[URLS[2]])
        orchestrator = build(collector, distiller, entries=self.ENTRIES)

        results = await orchestrator.run_full_pipeline(force_proceed=True)

        assert results["success"]
        assert sorted(distiller.calls) == URLS[:2]
        with zipfile.ZipFile(workspace / "bundles" / "test-bundle-v1.0.0.zip") as archive:
            group = json.loads(archive.read("bridge-bundle-v1.0.0/distilled/1.21.1/neoforge.json"))
        assert sorted(s["url"] for s in group["sources"]) == URLS[:2]

        state = load_snapshot(workspace)
        assert state.sources[URLS[2]].status == SourceStatus.FAILED
        assert any("force proceed" in w for w in state.stats["collection"].warnings)

    @pytest.mark.asyncio
    async def test_sequential_retries_name_exactly_the_failed_sources(
        self, build, distiller, recorded_sleep
    ):
        """Five sources, one at a time, three attempts each, two that never succeed."""
        collector = FakeCollector(failing=[URLS[1], URLS[3]])
        orchestrator = build(
            collector,
            distiller,
            collection_policy=RetryPolicy(max_attempts=3, base_delay=1.0, backoff_factor=2.0),
            collection_concurrency=1,
        )

        with pytest.raises(BlockingPipelineError) as exc_info:
            await orchestrator.run_full_pipeline()

        assert exc_info.value.failed_urls == [URLS[1], URLS[3]]
        assert recorded_sleep.delays == [1.0, 2.0, 1.0, 2.0]
        assert collector.calls.count(URLS[1]) == 3
        assert collector.calls.count(URLS[0]) == 1


class RevalidatingCollector(FakeCollector):
    """Answers 304 whenever the request carries validators."""

    def __init__(self):
        super().__init__()
        self.validators = {}

    async def collect(self, url, etag=None, last_modified=None):
        self.validators[url] = (etag, last_modified)
        if etag or last_modified:
            self.calls.append(url)
            return CollectedContent(
                content="",
                metadata={"status_code": 304, "etag": etag, "last_modified": last_modified},
                not_modified=True,
            )
        return await super().collect(url)


class TestCollectionResilience:
    """Test revalidation of stored content and short-circuiting of dead hosts."""

    LAST_MODIFIED = "Wed, 01 Jan 2025 00:00:00 GMT"

    @pytest.mark.asyncio
    async def test_unchanged_source_keeps_stored_content(self, build, distiller, workspace):
        stable, moved = "https://example.com/stable", "https://example.com/moved"
        stored = workspace / "collected" / "stable.html"
        stored.parent.mkdir(parents=True)
        stored.write_text("<html>stored copy</html>", encoding="utf-8")
        previous = CollectionMetadata(
            etag='"v1"',
            last_modified=self.LAST_MODIFIED,
            content_type="text/html",
            content_path=str(stored),
        )
        seed = SourceRegistry(
            state_path=workspace / "pipeline-state.json", legacy_dir=workspace / "legacy"
        )
        seed.load()
        seed.add_sources(
            [
                SourceRecord(url=stable, phase_metadata={"collection": previous}),
                SourceRecord(
                    url=moved,
                    phase_metadata={
                        "collection": previous.model_copy(
                            update={"content_path": str(workspace / "collected" / "gone.html")}
                        )
                    },
                ),
            ]
        )
        seed.save()

        collector = RevalidatingCollector()
        summary = await build(collector, distiller).run_collection()

        assert summary["succeeded"] == 2
        assert collector.validators == {
            stable: ('"v1"', self.LAST_MODIFIED),
            moved: (None, None),
        }
        record = load_snapshot(workspace).sources[stable]
        metadata = record.metadata_for(PipelinePhase.COLLECTION)
        assert record.status == SourceStatus.COLLECTED
        assert metadata.status_code == 304
        assert metadata.content_type == "text/html"
        assert metadata.content_path == str(stored)
        assert metadata.size_bytes == len("<html>stored copy</html>")
        assert stored.read_text(encoding="utf-8") == "<html>stored copy</html>"

    @pytest.mark.asyncio
    async def test_dead_host_is_short_circuited(
        self, build, distiller, workspace, recorded_sleep
    ):
        """Once the host's circuit opens, remaining sources fail on their first attempt."""
        collector = HttpContentCollector(breakers=HostCircuitBreakers(failure_threshold=3))
        collector._fetch = AsyncMock(
            side_effect=CollectionError("HTTP 503", code="http_error", http_status=503)
        )
        orchestrator = build(collector, distiller, collection_concurrency=1)

        with pytest.raises(BlockingPipelineError) as exc_info:
            await orchestrator.run_full_pipeline()

        assert exc_info.value.failed_urls == URLS
        assert collector._fetch.await_count == 3
        assert recorded_sleep.delays == [0.5, 0.5]
        state = load_snapshot(workspace)
        assert [state.sources[url].error.code for url in URLS] == [
            "http_error",
            "circuit_open",
            "circuit_open",
            "circuit_open",
            "circuit_open",
        ]
        assert [state.sources[url].error.retry_count for url in URLS] == [2, 2, 1, 1, 1]


class TestSkipPhases:
    """Test skipping phases from the full pipeline."""

    @pytest.mark.asyncio
    async def test_cannot_skip_discovery_without_sources(self, build, collector, distiller):
        with pytest.raises(PipelineConfigurationError):
            await build(collector, distiller).run_full_pipeline(
                skip_phases=[PipelinePhase.DISCOVERY]
            )

    @pytest.mark.asyncio
    async def test_cannot_skip_collection_before_anything_is_collected(
        self, build, collector, distiller
    ):
        with pytest.raises(PipelineConfigurationError) as exc_info:
            await build(collector, distiller).run_full_pipeline(
                skip_phases=[PipelinePhase.COLLECTION]
            )

        assert "collected" in str(exc_info.value)
        assert collector.calls == []

    @pytest.mark.asyncio
    async def test_skip_completed_phases(self, build, collector, distiller):
        orchestrator = build(collector, distiller)
        await orchestrator.run_discovery()
        await orchestrator.run_collection()

        results = await orchestrator.run_full_pipeline(
            skip_phases=[PipelinePhase.DISCOVERY, PipelinePhase.COLLECTION]
        )

        assert results["skipped_phases"] == ["discovery", "collection"]
        assert "collection" not in results["phases"]
        assert results["completion_percentage"] == 100.0


class TestPhases:
    """Test individual phase behaviour."""

    @pytest.mark.asyncio
    async def test_nothing_to_do_does_not_write_state(self, build, collector, distiller, workspace):
        summary = await build(collector, distiller).run_collection()

        assert summary["considered"] == 0
        assert "nothing to do" in summary["warnings"][-1]
        assert not (workspace / "pipeline-state.json").exists()

    @pytest.mark.asyncio
    async def test_filters_limit_collection(self, build, collector, distiller):
        entries = [
            {"url": URLS[0], "source_type": "guide", "loader_type": "neoforge"},
            {"url": URLS[1], "source_type": "blog_post", "loader_type": "fabric"},
        ]
        orchestrator = build(collector, distiller, entries=entries)
        await orchestrator.run_discovery()

        summary = await orchestrator.run_collection(
            criteria=FilterCriteria(loader_type=LoaderType.FABRIC)
        )

        assert collector.calls == [URLS[1]]
        assert summary["succeeded"] == 1
        assert orchestrator.registry.get_source(URLS[0]).status == SourceStatus.DISCOVERED

    @pytest.mark.asyncio
    async def test_prior_failures_block_packaging(self, build, distiller):
        orchestrator = build(FakeCollector(failing=[URLS[0]]), distiller)
        await orchestrator.run_discovery()
        await orchestrator.run_collection(force_proceed=True)
        await orchestrator.run_distillation()

        with pytest.raises(BlockingPipelineError) as exc_info:
            await orchestrator.run_packaging()

        assert exc_info.value.phase == PipelinePhase.PACKAGING
        assert exc_info.value.failed_urls == [URLS[0]]

        summary = await orchestrator.run_packaging(force_proceed=True)
        assert summary["succeeded"] == 4
        assert any("excluded from processing" in w for w in summary["warnings"])

    @pytest.mark.asyncio
    async def test_existing_distilled_output_is_reconciled(
        self, build, collector, distiller, workspace
    ):
        """Sources distilled elsewhere are not sent to the model again."""
        orchestrator = build(collector, distiller)
        await orchestrator.run_discovery()
        await orchestrator.run_collection()
        orchestrator.store.save_distilled(URLS[0], {"summary": "done by hand"})

        summary = await orchestrator.run_distillation()

        assert URLS[0] not in distiller.calls
        assert summary["details"]["out_of_band"] == [URLS[0]]
        record = orchestrator.registry.get_source(URLS[0])
        assert record.status == SourceStatus.DISTILLED
        assert record.is_out_of_band(PipelinePhase.DISTILLATION)

    @pytest.mark.asyncio
    async def test_skip_distillation_hint(self, build, collector, distiller, workspace):
        entries = [
            {"url": URLS[0], "processing_hints": {"skip_distillation": True}},
            {"url": URLS[1]},
        ]
        orchestrator = build(collector, distiller, entries=entries)

        results = await orchestrator.run_full_pipeline()

        assert distiller.calls == [URLS[1]]
        assert results["completion_percentage"] == 100.0
        record = orchestrator.registry.get_source(URLS[0])
        assert record.metadata_for(PipelinePhase.DISTILLATION).skipped

    @pytest.mark.asyncio
    async def test_distillation_failure_records_phase(self, build, collector, workspace):
        class BrokenDistiller(FakeDistiller):
            async def distill(self, record, content):
                raise RuntimeError("model exploded")

        orchestrator = build(collector, BrokenDistiller(), entries=[{"url": URLS[0]}])
        await orchestrator.run_discovery()
        await orchestrator.run_collection()

        with pytest.raises(BlockingPipelineError):
            await orchestrator.run_distillation()

        record = load_snapshot(workspace).sources[URLS[0]]
        assert record.status == SourceStatus.FAILED
        assert record.failed_phase == PipelinePhase.DISTILLATION
        assert record.error.code == "unknown_error"

    @pytest.mark.asyncio
    async def test_corrupted_snapshot_is_reported(self, build, collector, distiller, workspace):
        (workspace / "pipeline-state.json").write_text("{oops", encoding="utf-8")

        with pytest.raises(SnapshotCorruptedError):
            await build(collector, distiller).run_collection()


class TestPipelineStatus:
    """Test the status summary."""

    @pytest.mark.asyncio
    async def test_status_after_failures(self, build, distiller, workspace):
        with pytest.raises(BlockingPipelineError):
            await build(FakeCollector(failing=[URLS[0]]), distiller).run_full_pipeline()

        status = build(FakeCollector(), distiller).get_pipeline_status()

        assert status["total_sources"] == 5
        assert status["phase_counts"]["collected"] == 4
        assert status["completion_percentage"] == 0.0
        assert status["current_phase"] == "collection"
        assert status["failed_sources"] == [
            {
                "url": URLS[0],
                "phase": "collection",
                "code": "http_error",
                "message": f"HTTP 503 for {URLS[0]}",
            }
        ]
        assert status["stats"]["collection"]["failed_sources"] == 1
        json.dumps(status)

    def test_status_absorbs_legacy_files(self, build, collector, distiller, workspace):
        legacy = workspace / "legacy"
        legacy.mkdir()
        (legacy / "collected-sources.json").write_text(
            json.dumps(
                {
                    "sources": {
                        URLS[0]: {"title": "Old"},
                        URLS[1]: {
                            "status": "failed",
                            "error": SourceError(code="timeout", message="t").model_dump(),
                        },
                    }
                }
            ),
            encoding="utf-8",
        )

        status = build(collector, distiller).get_pipeline_status()

        assert status["total_sources"] == 2
        assert status["phase_counts"]["collected"] == 1
        assert status["failed_sources"][0]["phase"] == "collection"
