"""Durable registry of source records backed by a single JSON snapshot."""

import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from .. import __version__
from ..core.config import settings
from ..models.sources import (
    PhaseStats,
    PipelinePhase,
    PipelineState,
    SourceRecord,
    SourceStatus,
    can_transition,
    utc_now,
)

logger = logging.getLogger(__name__)

# Older per-phase tracking files, oldest phase first
LEGACY_FILES = [
    ("discovered-sources.json", SourceStatus.DISCOVERED),
    ("collected-sources.json", SourceStatus.COLLECTED),
    ("distilled-sources.json", SourceStatus.DISTILLED),
]


class SnapshotCorruptedError(Exception):
    """The snapshot exists but cannot be parsed or fails schema validation."""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Pipeline snapshot {self.path} is corrupted: {reason}")


class UnknownSourceError(KeyError):
    """An update referenced a URL that is not in the registry."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(url)

    def __str__(self) -> str:
        return f"Unknown source: {self.url}"


class InvalidTransitionError(ValueError):
    """A status change is not allowed by the record state machine."""

    def __init__(self, url: str, current: SourceStatus, target: SourceStatus):
        self.url = url
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition for {url}: {current.value} -> {target.value}")


class SourceRegistry:
    """Owns the in-memory pipeline state and its snapshot on disk.

    Executors mutate records only through :meth:`update_source`. Persisting is
    the orchestrator's job, via :meth:`save`.
    """

    def __init__(
        self,
        state_path: Optional[Union[str, Path]] = None,
        legacy_dir: Optional[Union[str, Path]] = None,
    ):
        self.state_path = Path(state_path or settings.state_file)
        self.legacy_dir = Path(legacy_dir or settings.legacy_dir)
        self.state = self._fresh_state()

    @staticmethod
    def _fresh_state() -> PipelineState:
        now = utc_now()
        state = PipelineState(
            context={
                "pipeline_version": __version__,
                "execution_id": str(uuid.uuid4()),
                "started_at": now,
                "last_updated": now,
                "warnings": [],
            }
        )
        state.refresh_metadata()
        return state

    def load(self) -> PipelineState:
        """Load the snapshot, or start fresh when none exists."""
        if not self.state_path.exists():
            logger.info(f"No pipeline snapshot at {self.state_path}, starting fresh")
            self.state = self._fresh_state()
            return self.state

        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SnapshotCorruptedError(self.state_path, f"invalid JSON: {e}") from e
        except OSError as e:
            raise SnapshotCorruptedError(self.state_path, f"unreadable: {e}") from e

        if not isinstance(raw, dict):
            raise SnapshotCorruptedError(self.state_path, "top-level value is not an object")

        try:
            state = PipelineState.model_validate(raw)
        except ValidationError as e:
            raise SnapshotCorruptedError(self.state_path, f"schema violation: {e}") from e

        state.refresh_metadata()
        state.context.setdefault("execution_id", str(uuid.uuid4()))
        state.context.setdefault("warnings", [])
        self.state = state
        logger.info(
            f"Loaded pipeline snapshot: {state.metadata.total_sources} sources, "
            f"{state.metadata.completion_percentage}% complete"
        )
        return self.state

    def save(self) -> Path:
        """Write the snapshot atomically.

        The new snapshot is written to a temporary file in the target directory
        and swapped into place, so a failed write leaves the previous snapshot
        intact.
        """
        self.state.refresh_metadata()
        self.state.context["last_updated"] = utc_now()

        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        payload = self.state.model_dump(mode="json")

        fd, tmp_name = tempfile.mkstemp(
            dir=self.state_path.parent, prefix=f".{self.state_path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.state_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.debug(f"Saved pipeline snapshot: {self.state_path}")
        return self.state_path

    def migrate_legacy(self) -> int:
        """Absorb older per-phase tracking files.

        A legacy record replaces an existing record only when it is strictly
        further along the pipeline, so running this twice changes nothing.
        """
        absorbed = 0
        migrated_from: List[str] = []

        for filename, default_status in LEGACY_FILES:
            path = self.legacy_dir / filename
            if not path.exists():
                continue

            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable legacy file {path}: {e}")
                continue

            entries = data.get("sources", data) if isinstance(data, dict) else None
            if not isinstance(entries, dict):
                logger.warning(f"Skipping legacy file {path}: no source map found")
                continue

            file_absorbed = 0
            for key, entry in entries.items():
                record = self._parse_legacy_record(key, entry, default_status, path)
                if record is None:
                    continue

                existing = self.state.sources.get(record.url)
                if existing is not None and record.rank <= existing.rank:
                    continue

                self.state.sources[record.url] = record
                file_absorbed += 1

            migrated_from.append(filename)
            absorbed += file_absorbed
            logger.info(f"Migrated {file_absorbed} sources from {path}")

        if migrated_from:
            previous = self.state.context.get("migrated_from") or []
            self.state.context["migrated_from"] = sorted(set(previous) | set(migrated_from))
            self.state.refresh_metadata()
        else:
            logger.info("No legacy files found to migrate")

        return absorbed

    @staticmethod
    def _parse_legacy_record(
        key: str, entry: Any, default_status: SourceStatus, path: Path
    ) -> Optional[SourceRecord]:
        if not isinstance(entry, dict):
            logger.warning(f"Skipping legacy entry {key} in {path}: not an object")
            return None

        entry = dict(entry)
        entry.setdefault("url", key)
        entry.setdefault("status", default_status.value)
        try:
            return SourceRecord.model_validate(entry)
        except ValidationError as e:
            logger.warning(f"Skipping invalid legacy entry {key} in {path}: {e}")
            return None

    def add_sources(self, records: Iterable[SourceRecord]) -> int:
        """Add newly discovered records. Existing URLs are left untouched."""
        added = 0
        for record in records:
            if record.url in self.state.sources:
                continue
            if record.status != SourceStatus.DISCOVERED:
                raise InvalidTransitionError(record.url, record.status, SourceStatus.DISCOVERED)

            record = record.model_copy(deep=True)
            if record.discovered_at is None:
                record.discovered_at = utc_now()
            self.state.sources[record.url] = record
            added += 1

        if added:
            self.state.refresh_metadata()
        logger.info(f"Added {added} new sources to pipeline state")
        return added

    def update_source(self, url: str, updates: Dict[str, Any]) -> SourceRecord:
        """Merge ``updates`` into the record for ``url`` and validate the result."""
        current = self.state.sources.get(url)
        if current is None:
            raise UnknownSourceError(url)

        if "url" in updates and updates["url"] != url:
            raise ValueError(f"Cannot change identity of {url} to {updates['url']}")

        merged = current.model_dump()
        for key, value in updates.items():
            if key == "phase_metadata" and value:
                phase_metadata = dict(merged.get("phase_metadata") or {})
                for phase_key, payload in value.items():
                    if hasattr(payload, "model_dump"):
                        payload = payload.model_dump()
                    phase_metadata[phase_key] = payload
                merged["phase_metadata"] = phase_metadata
            else:
                merged[key] = value.model_dump() if hasattr(value, "model_dump") else value

        updated = SourceRecord.model_validate(merged)

        if not can_transition(current.status, updated.status, current.failed_phase):
            raise InvalidTransitionError(url, current.status, updated.status)

        self.state.sources[url] = updated
        return updated.model_copy(deep=True)

    def record_phase_stats(self, phase: PipelinePhase, stats: PhaseStats) -> None:
        self.state.stats[phase.value] = stats

    def annotate(self, key: str, value: Any) -> None:
        self.state.context[key] = value

    def add_warning(self, message: str) -> None:
        logger.warning(message)
        self.state.context.setdefault("warnings", []).append(message)

    def get_source(self, url: str) -> Optional[SourceRecord]:
        record = self.state.sources.get(url)
        return record.model_copy(deep=True) if record else None

    def sources(self) -> List[SourceRecord]:
        return [record.model_copy(deep=True) for record in self.state.sources.values()]

    def failed_sources(self) -> List[SourceRecord]:
        return [
            record.model_copy(deep=True)
            for record in self.state.sources.values()
            if record.status == SourceStatus.FAILED
        ]

    def status_counts(self) -> Dict[str, int]:
        return dict(self.state.refresh_metadata().phase_counts)

    def __len__(self) -> int:
        return len(self.state.sources)
