"""Version-grouped packaging of collected and distilled content."""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

from ...core.config import settings
from ...models.sources import PipelinePhase, SourceRecord
from ..storage import ContentStore

logger = logging.getLogger(__name__)

DISTILLED_SECTIONS = ["breaking_changes", "api_updates", "migration_guides", "dependency_updates"]


@dataclass
class CollaboratorOutcome:
    """Result of a batch collaborator call (packaging or bundling).

    ``status`` applies to every record unless the record appears in
    ``failed_urls``. ``record_details`` carries per-record fields for the
    phase metadata.
    """

    status: str = "success"
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    failed_urls: Dict[str, str] = field(default_factory=dict)
    record_details: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


def default_package_version() -> str:
    return datetime.now(timezone.utc).strftime("%Y.%m.%d")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class VersionPackager:
    """Writes a versioned package directory.

    Layout::

        bridge-bundle-v{version}/
            package.json
            raw/{collected file}
            distilled/{minecraft_version}/{loader}.json
    """

    def __init__(
        self,
        package_dir: Optional[Union[str, Path]] = None,
        version: Optional[str] = None,
    ):
        self.package_dir = Path(package_dir or settings.package_dir)
        self.version = version or settings.package_version or default_package_version()

    @property
    def package_path(self) -> Path:
        return self.package_dir / f"bridge-bundle-v{self.version}"

    async def package(
        self, records: Sequence[SourceRecord], store: ContentStore
    ) -> CollaboratorOutcome:
        package_path = self.package_path
        raw_dir = package_path / "raw"
        distilled_dir = package_path / "distilled"
        raw_dir.mkdir(parents=True, exist_ok=True)
        distilled_dir.mkdir(parents=True, exist_ok=True)

        outcome = CollaboratorOutcome()
        groups: Dict[str, Dict[str, Any]] = {}

        for record in records:
            # Raw content is only written once the record is known to package
            raw_file = raw_dir / store.collected_path(record).name
            try:
                raw_content = store.read_collected(record)
            except OSError as e:
                outcome.failed_urls[record.url] = f"Collected content missing: {e}"
                raw_file.unlink(missing_ok=True)
                continue

            distillation = record.metadata_for(PipelinePhase.DISTILLATION)
            skipped = bool(distillation is not None and getattr(distillation, "skipped", False))
            distilled: Dict[str, Any] = {}
            if not skipped:
                try:
                    distilled = store.read_distilled(record.url)
                except (OSError, json.JSONDecodeError) as e:
                    outcome.failed_urls[record.url] = f"Distilled content unreadable: {e}"
                    raw_file.unlink(missing_ok=True)
                    continue

            with open(raw_file, "w", encoding="utf-8") as f:
                f.write(raw_content)

            mc_version = record.minecraft_version or "unknown"
            loader = record.loader_type.value if record.loader_type else "unknown"
            group_key = f"{mc_version}/{loader}"
            if group_key not in groups:
                groups[group_key] = self._load_group(distilled_dir, mc_version, loader)
            group = groups[group_key]

            for section in DISTILLED_SECTIONS:
                group[section].extend(distilled.get(section) or [])
            if distilled.get("summary"):
                group["summaries"].append({"url": record.url, "summary": distilled["summary"]})

            group["sources"].append(
                {
                    "url": record.url,
                    "title": record.title,
                    "source_type": record.source_type.value,
                    "raw_file": f"raw/{raw_file.name}",
                    "skipped_distillation": skipped,
                }
            )
            outcome.record_details[record.url] = {
                "package_path": str(package_path),
                "package_version": self.version,
                "version_group": group_key,
            }

        for group_key, group in groups.items():
            mc_version, loader = group_key.split("/", 1)
            target = distilled_dir / mc_version / f"{loader}.json"
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8") as f:
                json.dump(group, f, indent=2, ensure_ascii=False)

        manifest_path = self._write_manifest(package_path)

        if records and not outcome.record_details:
            outcome.status = "failed"
            outcome.error = "No sources could be packaged"

        outcome.details = {
            "package_path": str(package_path),
            "package_version": self.version,
            "manifest_path": str(manifest_path),
            "version_groups": sorted(groups),
            "sources_packaged": len(outcome.record_details),
        }
        logger.info(
            f"Packaged {len(outcome.record_details)} sources into {package_path} "
            f"({len(groups)} version groups)"
        )
        return outcome

    @classmethod
    def _load_group(cls, distilled_dir: Path, mc_version: str, loader: str) -> Dict[str, Any]:
        """Existing group file from an earlier run, so resumed packaging appends to it."""
        path = distilled_dir / mc_version / f"{loader}.json"
        if not path.exists():
            return cls._empty_group(mc_version, loader)
        with open(path, "r", encoding="utf-8") as f:
            group = json.load(f)
        for key, value in cls._empty_group(mc_version, loader).items():
            group.setdefault(key, value)
        return group

    @staticmethod
    def _empty_group(mc_version: str, loader: str) -> Dict[str, Any]:
        group: Dict[str, Any] = {"minecraft_version": mc_version, "loader_type": loader}
        for section in DISTILLED_SECTIONS:
            group[section] = []
        group["summaries"] = []
        group["sources"] = []
        return group

    def _write_manifest(self, package_path: Path) -> Path:
        checksums = {}
        breakdown: Dict[str, int] = {}
        for path in sorted(package_path.rglob("*")):
            if not path.is_file() or path.name == "package.json":
                continue
            relative = path.relative_to(package_path)
            checksums[relative.as_posix()] = sha256_file(path)
            if relative.parts[0] == "distilled" and path.suffix == ".json":
                with open(path, "r", encoding="utf-8") as f:
                    group = json.load(f)
                breakdown[f"{path.parent.name}/{path.stem}"] = len(group.get("sources", []))

        manifest = {
            "name": "bridge-bundle",
            "version": self.version,
            "description": "A versioned collection of Minecraft mod porting data.",
            "created_at": datetime.now(timezone.utc).isoformat(),
            "sources": sum(breakdown.values()),
            "content_breakdown": breakdown,
            "checksums": checksums,
        }
        manifest_path = package_path / "package.json"
        with open(manifest_path, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
        return manifest_path

