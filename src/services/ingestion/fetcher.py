"""HTTP fetcher for registered scheme sources.

Every request runs under a hard deadline.  Transient failures (timeouts,
transport errors, HTTP 5xx and 429) are retried with exponential backoff
via tenacity; other 4xx responses fail immediately because retrying will
not change the answer.

When a cache is supplied, the fetcher sends a conditional request using
the ``ETag`` / ``Last-Modified`` validators stored by
:meth:`SourceFetcher.remember_validators`.  The caller stores them only
once the fetched content has been fully applied, so a failed run is
fetched in full again next time.  A ``304 Not Modified`` answer is reported as ``not_modified`` so the
pipeline can skip parsing entirely.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.services.cache import url_cache_key
from src.services.errors import FetchError

if TYPE_CHECKING:
    from src.models.source import SourceDescriptor
    from src.services.cache import CacheManager

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_USER_AGENT = "SchemeWatch/1.0 (child welfare scheme aggregator)"
_VALIDATOR_TTL = 24 * 60 * 60  # force a full fetch at least daily


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.transient


@dataclass
class FetchedContent:
    """Raw body of a source plus transport metadata."""

    url: str
    text: str = ""
    status_code: int = 200
    content_type: str = ""
    not_modified: bool = False
    validators: dict[str, str] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(UTC))


# ---------------------------------------------------------------------------
# SourceFetcher
# ---------------------------------------------------------------------------


class SourceFetcher:
    """Retrieves raw content for a :class:`SourceDescriptor`.

    Parameters
    ----------
    timeout_seconds:
        Hard deadline for one request attempt, unless the source overrides it.
    max_attempts:
        Total attempts for transient failures (1 disables retry).
    backoff_min_seconds / backoff_max_seconds:
        Bounds of the exponential backoff between attempts.
    max_concurrency:
        Maximum simultaneous requests across all sources.
    cache:
        Optional cache for conditional-request validators.
    client:
        Optional pre-built ``httpx.AsyncClient`` (closed by :meth:`close`).
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_attempts: int = 4,
        backoff_min_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        max_concurrency: int = 4,
        cache: CacheManager | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._max_attempts = max_attempts
        self._backoff_min = backoff_min_seconds
        self._backoff_max = backoff_max_seconds
        self._cache = cache
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={
                "User-Agent": _USER_AGENT,
                "Accept": "application/json, application/rss+xml, text/html;q=0.9, */*;q=0.5",
            },
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, settings: object, cache: CacheManager | None = None) -> SourceFetcher:
        return cls(
            timeout_seconds=settings.fetch_timeout_seconds,
            max_attempts=settings.fetch_max_attempts,
            backoff_min_seconds=settings.fetch_backoff_min_seconds,
            backoff_max_seconds=settings.fetch_backoff_max_seconds,
            max_concurrency=settings.fetch_max_concurrency,
            cache=cache,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(self, source: SourceDescriptor, *, conditional: bool = True) -> FetchedContent:
        """Fetch *source*, retrying transient failures.

        Raises
        ------
        FetchError
            After the final attempt for transient failures, or immediately
            for permanent ones.
        """
        headers = dict(source.headers)
        if conditional:
            headers.update(await self._conditional_headers(source.url))

        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._backoff_min,
                min=self._backoff_min,
                max=self._backoff_max,
            ),
            before_sleep=self._log_retry,
            reraise=True,
        )

        return await retrying(self._fetch_once, source, headers)

    async def remember_validators(self, source: SourceDescriptor, content: FetchedContent) -> None:
        """Store the validators of *content* for the next conditional fetch of *source*."""
        if self._cache is None or content.not_modified or not content.validators:
            return
        await self._cache.set(
            url_cache_key("validators", source.url),
            content.validators,
            ttl_seconds=_VALIDATOR_TTL,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch_once(self, source: SourceDescriptor, headers: dict[str, str]) -> FetchedContent:
        timeout = source.timeout_seconds or self._timeout
        async with self._semaphore:
            try:
                async with asyncio.timeout(timeout):
                    response = await self._client.get(
                        source.url,
                        params=source.params or None,
                        headers=headers,
                        timeout=timeout,
                    )
            except (TimeoutError, httpx.TimeoutException) as exc:
                raise FetchError(
                    f"Timed out after {timeout}s fetching {source.url}",
                    source_key=source.key,
                    transient=True,
                ) from exc
            except httpx.TransportError as exc:
                raise FetchError(
                    f"Transport error fetching {source.url}: {exc}",
                    source_key=source.key,
                    transient=True,
                ) from exc

        status = response.status_code
        if status == 304:
            logger.debug("fetcher.not_modified", source=source.key)
            return FetchedContent(url=str(response.url), status_code=304, not_modified=True)

        if status == 429 or status >= 500:
            raise FetchError(
                f"HTTP {status} from {source.url}",
                source_key=source.key,
                status_code=status,
                transient=True,
            )
        if status >= 400:
            raise FetchError(
                f"HTTP {status} from {source.url}",
                source_key=source.key,
                status_code=status,
                transient=False,
            )

        content = FetchedContent(
            url=str(response.url),
            text=response.text,
            status_code=status,
            content_type=response.headers.get("content-type", ""),
        )
        for header, name in (("etag", "etag"), ("last-modified", "last_modified")):
            if response.headers.get(header):
                content.validators[name] = response.headers[header]
        return content

    async def _conditional_headers(self, url: str) -> dict[str, str]:
        if self._cache is None:
            return {}
        validators: dict | None = await self._cache.get(url_cache_key("validators", url))
        if not validators:
            return {}
        headers: dict[str, str] = {}
        if validators.get("etag"):
            headers["If-None-Match"] = validators["etag"]
        if validators.get("last_modified"):
            headers["If-Modified-Since"] = validators["last_modified"]
        return headers

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "fetcher.retrying",
            attempt=retry_state.attempt_number,
            source=getattr(exc, "source_key", ""),
            status=getattr(exc, "status_code", None),
            error=str(exc),
        )
