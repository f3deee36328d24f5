"""On-disk storage for collected and distilled content."""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set, Union
from urllib.parse import unquote

from ..core.config import settings
from ..models.sources import PipelinePhase, SourceRecord, SourceType

logger = logging.getLogger(__name__)


def safe_filename(url: str) -> str:
    """Turn a URL into a readable, filesystem-safe name."""
    cleaned = re.sub(r"^https?://", "", unquote(url))
    cleaned = re.sub(r"[^\w\-.~]", "_", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned.strip("_")


def collected_filename(url: str, source_type: Optional[SourceType] = None) -> str:
    extension = ".html"
    is_github_release = "github.com" in url and "releases" in url
    if source_type == SourceType.CHANGELOG or "changelog" in url:
        extension = ".md" if is_github_release else ".txt"
    elif is_github_release or ".md" in url:
        extension = ".md"
    return f"{safe_filename(url)}{extension}"


def distilled_filename(url: str) -> str:
    return f"{re.sub(r'[^a-zA-Z0-9]', '_', url)}.json"


class ContentStore:
    """Maps source URLs to files in the collected and distilled directories."""

    def __init__(
        self,
        collected_dir: Optional[Union[str, Path]] = None,
        distilled_dir: Optional[Union[str, Path]] = None,
    ):
        self.collected_dir = Path(collected_dir or settings.collected_content_dir)
        self.distilled_dir = Path(distilled_dir or settings.distilled_content_dir)

    def collected_path(self, record: SourceRecord) -> Path:
        return self.collected_dir / collected_filename(record.url, record.source_type)

    def distilled_path(self, url: str) -> Path:
        return self.distilled_dir / distilled_filename(url)

    def save_collected(self, record: SourceRecord, content: str) -> Path:
        self.collected_dir.mkdir(parents=True, exist_ok=True)
        path = self.collected_path(record)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        logger.debug(f"Saved collected content: {path}")
        return path

    def stored_collected_path(self, record: SourceRecord) -> Path:
        """Where a record's collected content lives, preferring the path recorded at collection."""
        metadata = record.metadata_for(PipelinePhase.COLLECTION)
        if metadata is not None and metadata.content_path:
            return Path(metadata.content_path)
        return self.collected_path(record)

    def has_collected(self, record: SourceRecord) -> bool:
        return self.stored_collected_path(record).exists()

    def read_collected(self, record: SourceRecord) -> str:
        with open(self.stored_collected_path(record), "r", encoding="utf-8") as f:
            return f.read()

    def save_distilled(self, url: str, data: Dict[str, Any]) -> Path:
        self.distilled_dir.mkdir(parents=True, exist_ok=True)
        path = self.distilled_path(url)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        logger.debug(f"Saved distilled content: {path}")
        return path

    def read_distilled(self, url: str) -> Dict[str, Any]:
        with open(self.distilled_path(url), "r", encoding="utf-8") as f:
            return json.load(f)

    def has_distilled(self, url: str) -> bool:
        return self.distilled_path(url).exists()

    def existing_distilled_urls(self, urls: Iterable[str]) -> Set[str]:
        """URLs among ``urls`` that already have distilled output on disk."""
        if not self.distilled_dir.exists():
            return set()
        return {url for url in urls if self.has_distilled(url)}
