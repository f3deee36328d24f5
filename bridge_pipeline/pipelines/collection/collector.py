"""HTTP content collector for discovered sources."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from ...core.config import settings
from .circuit_breaker import HostCircuitBreakers

logger = logging.getLogger(__name__)

DEFAULT_ACCEPT = "text/html,text/plain,application/xhtml+xml,text/markdown"

# Responses that count against the host rather than the URL
HOST_FAILURE_STATUSES = {429, 500, 502, 503, 504}


class CollectionError(Exception):
    """A source could not be collected."""

    def __init__(
        self,
        message: str,
        code: str = "collection_error",
        http_status: Optional[int] = None,
        retryable: bool = True,
    ):
        self.code = code
        self.http_status = http_status
        self.retryable = retryable
        super().__init__(message)


@dataclass
class CollectedContent:
    """Downloaded content plus response metadata.

    ``not_modified`` is set when the server answered a conditional request
    with 304; ``content`` is then empty and the stored copy is still current.
    """

    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    not_modified: bool = False


class HttpContentCollector:
    """Downloads one URL per call and checks that it looks like usable text."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        min_content_length: Optional[int] = None,
        max_redirects: int = 5,
        breakers: Optional[HostCircuitBreakers] = None,
    ):
        self.timeout = timeout or settings.collection_timeout
        self.user_agent = user_agent or settings.user_agent
        self.min_content_length = (
            settings.min_content_length if min_content_length is None else min_content_length
        )
        self.max_redirects = max_redirects
        self.breakers = breakers or HostCircuitBreakers()

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Accept": DEFAULT_ACCEPT,
            "Accept-Language": "en-US,en;q=0.5",
        }

    async def collect(
        self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None
    ) -> CollectedContent:
        """Fetch ``url``; raises ``CollectionError`` for unusable responses.

        ``etag`` and ``last_modified`` from an earlier collection turn the
        request into a conditional one.
        """
        breaker = self.breakers.for_url(url)
        if not breaker.allow_request():
            raise CollectionError(
                f"Circuit open for {breaker.name}, skipping {url} "
                f"(retry in {breaker.retry_after():.0f}s)",
                code="circuit_open",
                retryable=False,
            )

        try:
            collected = await self._fetch(url, etag, last_modified)
        except CollectionError as e:
            if e.http_status in HOST_FAILURE_STATUSES:
                breaker.record_failure()
            else:
                breaker.record_success()
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError):
            breaker.record_failure()
            raise

        breaker.record_success()
        return collected

    async def _fetch(
        self, url: str, etag: Optional[str], last_modified: Optional[str]
    ) -> CollectedContent:
        conditional: Dict[str, str] = {}
        if etag:
            conditional["If-None-Match"] = etag
        if last_modified:
            conditional["If-Modified-Since"] = last_modified

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout, headers=self.headers) as session:
            async with session.get(
                url, max_redirects=self.max_redirects, headers=conditional
            ) as response:
                if response.status == 304:
                    logger.debug(f"{url} not modified since last collection")
                    return CollectedContent(
                        content="",
                        metadata={
                            "status_code": 304,
                            "etag": response.headers.get("ETag", etag),
                            "last_modified": response.headers.get("Last-Modified", last_modified),
                            "final_url": str(response.url),
                        },
                        not_modified=True,
                    )

                if response.status < 200 or response.status >= 400:
                    raise CollectionError(
                        f"HTTP {response.status} for {url}",
                        code="http_error",
                        http_status=response.status,
                    )

                try:
                    content = await response.text()
                except UnicodeDecodeError as e:
                    raise CollectionError(
                        f"Could not decode content from {url}: {e}", code="binary_content"
                    ) from e

                self._check_content(url, content)

                metadata = {
                    "status_code": response.status,
                    "content_type": response.headers.get("Content-Type", "unknown"),
                    "content_length": response.headers.get("Content-Length", str(len(content))),
                    "etag": response.headers.get("ETag"),
                    "last_modified": response.headers.get("Last-Modified"),
                    "final_url": str(response.url),
                }

        logger.debug(f"Collected {len(content)} characters from {url}")
        return CollectedContent(content=content, metadata=metadata)

    def _check_content(self, url: str, content: str) -> None:
        if not content or len(content) < self.min_content_length:
            raise CollectionError(
                f"Empty or too-short content received from {url}", code="content_too_short"
            )
        if "\0" in content:
            raise CollectionError(
                f"Binary content detected from {url}, expected text", code="binary_content"
            )
