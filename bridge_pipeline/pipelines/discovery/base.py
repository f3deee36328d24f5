"""Base classes for source discovery."""

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ...models.sources import DiscoveryMetadata, SourceRecord

logger = logging.getLogger(__name__)


def url_checksum(url: str) -> str:
    """Short stable fingerprint of a URL."""
    return hashlib.sha256(url.encode()).hexdigest()[:16]


@dataclass
class DiscoveryResult:
    """Sources found by a discoverer, keyed by URL, plus run statistics."""

    sources: Dict[str, SourceRecord] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)


class BaseDiscoverer(ABC):
    """Abstract base class for source discoverers."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def discover(self) -> List[SourceRecord]:
        """Find sources. Must be implemented by subclasses."""
        pass

    @abstractmethod
    def get_source_name(self) -> str:
        """Get the name of this discoverer's source."""
        pass

    async def run_discovery_job(self) -> DiscoveryResult:
        """Run discovery and return the deduplicated sources with a summary."""
        started_at = datetime.now(timezone.utc)
        self.logger.info(f"Starting discovery job for {self.get_source_name()}")

        try:
            records = await self.discover()
        except Exception as e:
            self.logger.error(f"Discovery job failed for {self.get_source_name()}: {e}")
            raise

        result = DiscoveryResult()
        duplicates = 0
        for record in records:
            if record.url in result.sources:
                duplicates += 1
                continue
            if "discovery" not in record.phase_metadata:
                record = record.model_copy(
                    update={
                        "phase_metadata": {
                            **record.phase_metadata,
                            "discovery": DiscoveryMetadata(discovered_by=self.get_source_name()),
                        }
                    }
                )
            result.sources[record.url] = record

        by_type: Dict[str, int] = {}
        for record in result.sources.values():
            by_type[record.source_type.value] = by_type.get(record.source_type.value, 0) + 1

        completed_at = datetime.now(timezone.utc)
        result.stats = {
            "source": self.get_source_name(),
            "sources_found": len(result.sources),
            "duplicates_removed": duplicates,
            "source_types": by_type,
            "started_at": started_at.isoformat(),
            "completed_at": completed_at.isoformat(),
            "duration_seconds": (completed_at - started_at).total_seconds(),
        }
        self.logger.info(f"Discovery job completed: {result.stats}")
        return result
