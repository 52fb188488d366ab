"""Admin authentication for the ingestion endpoints.

Every route under ``/api/v1/admin`` (manual ingestion, the source-change
webhook, scheme retirement) depends on :func:`require_admin_api_key`.  The
caller presents ``X-Admin-API-Key``; it is compared in constant time with
the ``ADMIN_API_KEY`` of the running app's settings.

With no key configured, development deployments accept admin calls (so a
local scraper can hit the webhook) and production answers 503.
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from config.settings import Settings
from config.settings import settings as default_settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ADMIN_KEY_HEADER = "X-Admin-API-Key"

_admin_key_header = APIKeyHeader(name=ADMIN_KEY_HEADER, auto_error=False)


def _app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", default_settings)


def _keys_match(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_api_key(
    request: Request,
    presented: str | None = Security(_admin_key_header),
) -> str:
    """Dependency guarding admin routes.

    Returns the accepted key (``""`` when the dev-mode bypass applies).

    Raises
    ------
    HTTPException
        401 without a key, 403 with a wrong one, 503 in production when
        no key is configured.
    """
    settings = _app_settings(request)
    expected = settings.admin_api_key
    path = request.url.path

    if not expected:
        if settings.is_production:
            logger.error("admin_auth.key_unset_in_production", path=path)
            raise HTTPException(status_code=503, detail="Admin access is not configured.")
        logger.warning("admin_auth.dev_bypass", path=path)
        return ""

    caller = request.client.host if request.client else "unknown"
    if not presented:
        logger.warning("admin_auth.key_missing", path=path, caller=caller)
        raise HTTPException(
            status_code=401,
            detail=f"Missing {ADMIN_KEY_HEADER} header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not _keys_match(presented, expected):
        logger.warning("admin_auth.key_rejected", path=path, caller=caller)
        raise HTTPException(status_code=403, detail="Admin key rejected.")

    return presented
