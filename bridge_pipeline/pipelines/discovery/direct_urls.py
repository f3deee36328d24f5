"""Discovery of curated sources listed directly by URL."""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from ...core.config import settings
from ...models.sources import (
    DiscoveryMetadata,
    LoaderType,
    Priority,
    SourceRecord,
    SourceType,
    utc_now,
)
from .base import BaseDiscoverer, url_checksum

VERSION_PATTERN = re.compile(r"\b1\.\d+(?:\.\d+)?\b")


class DirectUrlDiscoverer(BaseDiscoverer):
    """Builds source records from a JSON list of curated URLs.

    Each entry needs a ``url`` and may set any source record field
    (``source_type``, ``loader_type``, ``priority``, ``processing_hints``...)
    plus an optional ``description`` used as the title. Fields left out are
    inferred from the URL.
    """

    def __init__(
        self,
        sources_file: Optional[Union[str, Path]] = None,
        entries: Optional[List[Dict[str, Any]]] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(config)
        file_setting = sources_file or settings.discovery_sources_file
        self.sources_file = Path(file_setting) if file_setting else None
        self.entries = entries

    def get_source_name(self) -> str:
        return "direct_urls"

    def _load_entries(self) -> List[Dict[str, Any]]:
        if self.entries is not None:
            return list(self.entries)
        if self.sources_file is None:
            self.logger.warning("No discovery sources file configured")
            return []

        with open(self.sources_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        if isinstance(data, dict):
            data = data.get("sources", [])
        if not isinstance(data, list):
            raise ValueError(f"{self.sources_file} must contain a list of source entries")
        return data

    async def discover(self) -> List[SourceRecord]:
        records = []
        for entry in self._load_entries():
            if not isinstance(entry, dict) or not entry.get("url"):
                self.logger.warning(f"Skipping source entry without url: {entry!r}")
                continue
            try:
                records.append(self._build_record(entry))
            except ValueError as e:
                self.logger.warning(f"Skipping invalid source entry {entry.get('url')}: {e}")
        return records

    def _build_record(self, entry: Dict[str, Any]) -> SourceRecord:
        entry = dict(entry)
        url = entry["url"]
        description = entry.pop("description", None)
        source_type = SourceType(entry.get("source_type", SourceType.DOCUMENTATION))
        entry["source_type"] = source_type.value
        if entry.get("loader_type"):
            entry["loader_type"] = LoaderType(entry["loader_type"]).value

        url_kind = self._classify_url(url)
        version = entry.get("minecraft_version") or self._extract_version(description)

        entry.setdefault("title", description or self._generate_title(url, url_kind, entry))
        entry["minecraft_version"] = version
        entry.setdefault("checksum", url_checksum(url))
        entry.setdefault("tags", self._generate_tags(entry, url_kind, version))
        entry.setdefault("relevance_score", 0.95 if source_type == SourceType.GUIDE else 0.8)
        entry.setdefault(
            "priority", Priority.HIGH if source_type == SourceType.GUIDE else Priority.MEDIUM
        )
        entry["status"] = "discovered"
        entry["discovered_at"] = utc_now()
        entry["phase_metadata"] = {
            "discovery": DiscoveryMetadata(
                discovered_by=self.get_source_name(),
                discovery_source=str(self.sources_file) if self.sources_file else None,
            )
        }
        return SourceRecord.model_validate(entry)

    @staticmethod
    def _classify_url(url: str) -> str:
        host = urlparse(url).hostname or ""
        if host == "gist.github.com":
            return "github_gist"
        if host.endswith("github.com"):
            return "github_page"
        if host.startswith("docs."):
            return "documentation"
        return "webpage"

    @staticmethod
    def _extract_version(text: Optional[str]) -> Optional[str]:
        if not text:
            return None
        match = VERSION_PATTERN.search(text)
        return match.group(0) if match else None

    @staticmethod
    def _generate_title(url: str, url_kind: str, entry: Dict[str, Any]) -> str:
        parsed = urlparse(url)
        parts = [p for p in parsed.path.split("/") if p]
        loader = str(entry.get("loader_type") or "").capitalize()
        if url_kind == "github_page" and len(parts) >= 2:
            return f"{parts[0]}/{parts[1]} Guide"
        if url_kind == "github_gist" and parts:
            return f"GitHub Gist by {parts[0]}"
        if url_kind == "documentation" and loader:
            return f"{loader} Documentation"
        return f"{str(entry.get('source_type', 'documentation')).capitalize()} - {parsed.hostname}"

    @staticmethod
    def _generate_tags(entry: Dict[str, Any], url_kind: str, version: Optional[str]) -> List[str]:
        tags = [str(entry.get("source_type", SourceType.DOCUMENTATION.value)), url_kind]
        if entry.get("loader_type"):
            tags.append(str(entry["loader_type"]))
        if url_kind == "github_gist":
            tags.extend(["gist", "community"])
        if version:
            tags.append(version)
        return tags
