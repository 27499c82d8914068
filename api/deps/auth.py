"""Authentication dependency for mutation endpoints."""
from __future__ import annotations

import hmac
import logging
import os
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

ENV_AUTH_ENABLED = "CATALOG_JOBS_API_AUTH_ENABLED"
ENV_AUTH_TOKEN = "CATALOG_JOBS_API_TOKEN"

# Header naming the human or service acting through the token; recorded
# as ``requested_by`` on cancellations.
ACTOR_HEADER = "X-Requested-By"


def auth_enabled() -> bool:
    return os.environ.get(ENV_AUTH_ENABLED, "true").lower() in ("true", "1", "yes")


def _presented_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.headers.get("X-API-Key", "").strip() or None


async def require_auth(request: Request) -> str:
    """FastAPI dependency that enforces bearer-token / API-key authentication.

    Reads the token from ``Authorization: Bearer <token>`` or the
    ``X-API-Key`` header.  Auth settings are read from the environment on
    every request.  Returns the acting principal: the ``X-Requested-By``
    header when present, else ``"api"``.

    Raises
    ------
    HTTPException(401)
        If the token is missing, empty, or does not match.
    """
    actor = request.headers.get(ACTOR_HEADER, "").strip() or "api"
    if not auth_enabled():
        return actor

    expected = os.environ.get(ENV_AUTH_TOKEN, "")
    if not expected:
        logger.warning(
            "%s is on but %s is not set. All mutation requests will be rejected.",
            ENV_AUTH_ENABLED, ENV_AUTH_TOKEN,
        )
        raise HTTPException(status_code=401, detail="Server auth token not configured")

    token = _presented_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")
    if not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return actor
