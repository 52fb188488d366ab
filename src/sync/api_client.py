"""HTTP client the device uses to pull deltas and scheme details."""

from __future__ import annotations

import httpx
import structlog
from pydantic import ValidationError

from src.models.scheme import DeltaBatch, SchemeRecord
from src.services.errors import SyncFetchError

logger = structlog.get_logger(__name__)

_API_PREFIX = "/api/v1"


class SchemeApiClient:
    """Thin async wrapper over the schemes API.

    Parameters
    ----------
    base_url:
        Server root, e.g. ``https://schemes.example.org``.
    timeout_seconds:
        Per-request timeout.
    client:
        Optional pre-built ``httpx.AsyncClient`` (tests pass one bound to
        an ASGI app or a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_delta(self, since: int, limit: int) -> DeltaBatch:
        """``GET /schemes?since=&limit=``.

        Raises
        ------
        SyncFetchError
            On transport errors, non-2xx answers, or a malformed page.
        """
        response = await self._get(f"{_API_PREFIX}/schemes", params={"since": since, "limit": limit})
        if response.status_code >= 400:
            raise SyncFetchError(
                f"Delta request failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return DeltaBatch.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SyncFetchError(f"Malformed delta page: {exc}") from exc

    async def fetch_scheme(self, scheme_id: str) -> SchemeRecord | None:
        """``GET /schemes/{id}``; ``None`` if the server does not know it."""
        response = await self._get(f"{_API_PREFIX}/schemes/{scheme_id}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SyncFetchError(
                f"Scheme request failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return SchemeRecord.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SyncFetchError(f"Malformed scheme payload: {exc}") from exc

    async def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        try:
            return await self._client.get(f"{self._base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            logger.warning("sync.api_request_failed", path=path, error=str(exc))
            raise SyncFetchError(f"Request to {path} failed: {exc}") from exc
