"""Tests for the source registry and its snapshot persistence."""

import json
from unittest.mock import patch

import pytest

from bridge_pipeline.models.sources import (
    CollectionMetadata,
    DiscoveryMetadata,
    PipelinePhase,
    SourceError,
    SourceStatus,
)
from bridge_pipeline.pipelines.registry import (
    InvalidTransitionError,
    SnapshotCorruptedError,
    SourceRegistry,
    UnknownSourceError,
)

URL_A = "https://example.com/a"
URL_B = "https://example.com/b"


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestSnapshotPersistence:
    """Test loading and saving the unified snapshot."""

    def test_load_missing_snapshot_starts_fresh(self, registry):
        state = registry.load()

        assert state.sources == {}
        assert state.metadata.total_sources == 0
        assert state.context["execution_id"]
        assert state.context["warnings"] == []

    def test_save_and_reload(self, registry, state_path, make_record):
        """A saved snapshot reloads with the same records."""
        registry.add_sources([make_record(URL_A, title="Primer")])
        registry.update_source(URL_A, {"status": SourceStatus.COLLECTING})
        registry.save()

        reloaded = SourceRegistry(state_path=state_path, legacy_dir=state_path.parent)
        state = reloaded.load()

        assert state.sources[URL_A].status == SourceStatus.COLLECTING
        assert state.sources[URL_A].title == "Primer"
        assert state.metadata.phase_counts["collecting"] == 1
        assert state.context["execution_id"] == registry.state.context["execution_id"]

    def test_save_leaves_no_temporary_files(self, registry, state_path, make_record):
        registry.add_sources([make_record(URL_A)])
        registry.save()

        assert [p.name for p in state_path.parent.iterdir()] == [state_path.name]

    def test_failed_save_keeps_previous_snapshot(self, registry, state_path, make_record):
        """An interrupted write never replaces the last good snapshot."""
        registry.add_sources([make_record(URL_A)])
        registry.save()
        previous = state_path.read_text(encoding="utf-8")

        registry.add_sources([make_record(URL_B)])
        with patch(
            "bridge_pipeline.pipelines.registry.json.dump", side_effect=OSError("disk full")
        ):
            with pytest.raises(OSError):
                registry.save()

        assert state_path.read_text(encoding="utf-8") == previous
        assert [p.name for p in state_path.parent.iterdir()] == [state_path.name]

    def test_invalid_json_is_corrupted(self, registry, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json", encoding="utf-8")

        with pytest.raises(SnapshotCorruptedError) as exc_info:
            registry.load()

        assert "invalid JSON" in exc_info.value.reason

    def test_invalid_utf8_is_corrupted(self, registry, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_bytes(b'{"sources": "\xff\xfe"}')

        with pytest.raises(SnapshotCorruptedError) as exc_info:
            registry.load()

        assert "invalid JSON" in exc_info.value.reason

    def test_unreadable_snapshot_is_corrupted(self, registry, state_path):
        state_path.mkdir(parents=True)

        with pytest.raises(SnapshotCorruptedError) as exc_info:
            registry.load()

        assert "unreadable" in exc_info.value.reason

    def test_non_object_snapshot_is_corrupted(self, registry, state_path):
        write_json(state_path, [1, 2, 3])

        with pytest.raises(SnapshotCorruptedError):
            registry.load()

    def test_schema_violation_is_corrupted(self, registry, state_path):
        write_json(state_path, {"sources": {URL_A: {"url": URL_A, "status": "exploded"}}})

        with pytest.raises(SnapshotCorruptedError) as exc_info:
            registry.load()

        assert "schema violation" in exc_info.value.reason


class TestRecordUpdates:
    """Test adding and updating records."""

    def test_add_sources_skips_existing_urls(self, registry, make_record):
        assert registry.add_sources([make_record(URL_A), make_record(URL_B)]) == 2
        assert registry.add_sources([make_record(URL_A, title="changed")]) == 0

        assert len(registry) == 2
        assert registry.get_source(URL_A).title is None
        assert registry.get_source(URL_A).discovered_at is not None

    def test_add_sources_requires_discovered_status(self, registry, make_record):
        with pytest.raises(InvalidTransitionError):
            registry.add_sources([make_record(URL_A, status=SourceStatus.COLLECTED)])

    def test_update_unknown_source(self, registry):
        with pytest.raises(UnknownSourceError) as exc_info:
            registry.update_source(URL_A, {"status": SourceStatus.COLLECTING})

        assert exc_info.value.url == URL_A

    def test_illegal_transition_rejected(self, registry, make_record):
        """Records cannot jump over a phase."""
        registry.add_sources([make_record(URL_A)])

        with pytest.raises(InvalidTransitionError):
            registry.update_source(URL_A, {"status": SourceStatus.COLLECTED})

        assert registry.get_source(URL_A).status == SourceStatus.DISCOVERED

    def test_identity_cannot_change(self, registry, make_record):
        registry.add_sources([make_record(URL_A)])

        with pytest.raises(ValueError):
            registry.update_source(URL_A, {"url": URL_B})

    def test_phase_metadata_is_merged(self, registry, make_record):
        """Updating one phase's metadata keeps the others."""
        registry.add_sources(
            [make_record(URL_A, phase_metadata={"discovery": DiscoveryMetadata(discovered_by="t")})]
        )
        registry.update_source(URL_A, {"status": SourceStatus.COLLECTING})
        updated = registry.update_source(
            URL_A,
            {
                "status": SourceStatus.COLLECTED,
                "phase_metadata": {"collection": CollectionMetadata(status_code=200)},
            },
        )

        assert set(updated.phase_metadata) == {"discovery", "collection"}
        assert updated.metadata_for(PipelinePhase.DISCOVERY).discovered_by == "t"

    def test_reads_return_copies(self, registry, make_record):
        """Mutating a returned record does not touch the registry."""
        registry.add_sources([make_record(URL_A)])

        record = registry.get_source(URL_A)
        record.title = "mutated"
        registry.sources()[0].tags.append("x")

        assert registry.get_source(URL_A).title is None
        assert registry.get_source(URL_A).tags == []

    def test_failed_sources(self, registry, make_record):
        registry.add_sources([make_record(URL_A), make_record(URL_B)])
        registry.update_source(URL_A, {"status": SourceStatus.COLLECTING})
        registry.update_source(
            URL_A,
            {
                "status": SourceStatus.FAILED,
                "error": SourceError(code="timeout", message="t", phase=PipelinePhase.COLLECTION),
            },
        )

        assert [r.url for r in registry.failed_sources()] == [URL_A]
        assert registry.status_counts()["failed"] == 1

    def test_add_warning_is_kept_in_context(self, registry):
        registry.add_warning("something odd")

        assert registry.state.context["warnings"] == ["something odd"]


class TestLegacyMigration:
    """Test absorbing older per-phase tracking files."""

    def test_most_advanced_record_wins(self, registry, tmp_path):
        legacy = tmp_path / "legacy"
        write_json(
            legacy / "discovered-sources.json",
            {"sources": {URL_A: {"title": "A"}, URL_B: {"url": URL_B, "title": "B"}}},
        )
        write_json(legacy / "collected-sources.json", {URL_A: {"title": "A collected"}})

        absorbed = registry.migrate_legacy()

        assert absorbed == 3
        assert registry.get_source(URL_A).status == SourceStatus.COLLECTED
        assert registry.get_source(URL_A).title == "A collected"
        assert registry.get_source(URL_B).status == SourceStatus.DISCOVERED
        assert registry.state.context["migrated_from"] == [
            "collected-sources.json",
            "discovered-sources.json",
        ]

    def test_migration_is_idempotent(self, registry, tmp_path):
        """A second migration changes nothing."""
        write_json(tmp_path / "legacy" / "discovered-sources.json", {URL_A: {}})

        registry.migrate_legacy()
        before = registry.state.sources[URL_A].model_dump()

        assert registry.migrate_legacy() == 0
        assert registry.state.sources[URL_A].model_dump() == before

    def test_existing_progress_is_not_rolled_back(self, registry, tmp_path, make_record):
        registry.add_sources([make_record(URL_A)])
        registry.update_source(URL_A, {"status": SourceStatus.COLLECTING})
        write_json(tmp_path / "legacy" / "discovered-sources.json", {URL_A: {}})

        assert registry.migrate_legacy() == 0
        assert registry.get_source(URL_A).status == SourceStatus.COLLECTING

    def test_bad_files_and_entries_are_skipped(self, registry, tmp_path):
        legacy = tmp_path / "legacy"
        legacy.mkdir(parents=True)
        (legacy / "collected-sources.json").write_text("{broken", encoding="utf-8")
        (legacy / "distilled-sources.json").write_bytes(b"\xff\xfe{}")
        write_json(
            legacy / "discovered-sources.json",
            {URL_A: "not an object", URL_B: {"relevance_score": 7}, "https://ok.example": {}},
        )

        assert registry.migrate_legacy() == 1
        assert len(registry) == 1
        assert registry.get_source("https://ok.example") is not None

    def test_legacy_failure_phase_defaults_to_collection(self, registry, tmp_path):
        write_json(
            tmp_path / "legacy" / "discovered-sources.json",
            {
                URL_A: {
                    "status": "failed",
                    "error": {"code": "http_error", "message": "HTTP 404", "phase": "failed"},
                }
            },
        )

        registry.migrate_legacy()

        assert registry.get_source(URL_A).failed_phase == PipelinePhase.COLLECTION

    def test_no_legacy_files(self, registry):
        assert registry.migrate_legacy() == 0
        assert "migrated_from" not in registry.state.context
