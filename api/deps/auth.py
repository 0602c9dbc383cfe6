"""Authentication and caller-identity dependencies."""
from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import HTTPException, Request

from ..jobs.errors import UnauthenticatedError

logger = logging.getLogger(__name__)

# Auth configuration: read from environment
API_AUTH_ENABLED: bool = os.environ.get("TC_API_AUTH_ENABLED", "true").lower() in (
    "true", "1", "yes",
)
API_AUTH_TOKEN: str = os.environ.get("TC_API_TOKEN", "")

USER_HEADER = "X-User-Id"


async def require_auth(request: Request) -> None:
    """FastAPI dependency that enforces bearer-token / API-key authentication.

    Reads the token from ``Authorization: Bearer <token>`` or the
    ``X-API-Key`` header.  Returns immediately when auth is disabled
    (local dev mode).

    Raises
    ------
    HTTPException(401)
        If the token is missing, empty, or does not match.
    """
    if not API_AUTH_ENABLED:
        return

    if not API_AUTH_TOKEN:
        logger.warning(
            "TC_API_AUTH_ENABLED is true but TC_API_TOKEN is not set. "
            "All mutation requests will be rejected."
        )
        raise HTTPException(status_code=401, detail="Server auth token not configured")

    token: str | None = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()

    if not token:
        token = request.headers.get("X-API-Key", "").strip() or None

    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    if token != API_AUTH_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid authentication token")


async def get_caller_id(request: Request) -> Optional[str]:
    """Identity of the user on whose behalf the request is made, if any."""
    user_id = request.headers.get(USER_HEADER, "").strip()
    return user_id or None


async def require_caller_id(request: Request) -> str:
    """Like ``get_caller_id`` but raises ``UnauthenticatedError`` when absent."""
    user_id = await get_caller_id(request)
    if user_id is None:
        raise UnauthenticatedError("User must be authenticated.")
    return user_id
