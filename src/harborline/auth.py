"""API authentication: optional Bearer key for the run endpoints.

Security Model:
    Harborline runs as a single-tenant in-cluster service. When ``api.api_key``
    (or ``HARBORLINE_API_KEY``) is configured, every ``/runs`` endpoint needs
    ``Authorization: Bearer <key>``. The SSE stream also accepts ``?token=<key>``
    because the browser EventSource API cannot set headers. With no key
    configured the API is open, which suits a cluster-internal Service.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def generate_api_key() -> str:
    """A cryptographically secure key for ``api.api_key``."""
    return secrets.token_urlsafe(32)


def _expected_key(request: Request) -> str | None:
    # Only None disables auth; an empty configured key rejects every request.
    return getattr(request.app.state, "api_key", None)


def _check(request: Request, provided: str | None, expected: str, hint: str) -> None:
    client = request.client.host if request.client else "unknown"
    if not provided:
        logger.warning("API request without credentials from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Authentication required. Provide {hint}.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(provided, expected):
        logger.warning("Invalid API key from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency: Bearer key check, a no-op when no key is configured."""
    expected = _expected_key(request)
    if expected is None:
        return True
    _check(
        request,
        credentials.credentials if credentials else None,
        expected,
        "Authorization: Bearer <api_key> header",
    )
    return True


async def require_stream_token(
    request: Request,
    token: str | None = Query(default=None, description="API key for EventSource clients"),
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> bool:
    """Like ``require_api_key`` but also accepts ``?token=`` for SSE."""
    expected = _expected_key(request)
    if expected is None:
        return True
    provided = credentials.credentials if credentials else token
    _check(request, provided, expected, "?token=<api_key> or an Authorization header")
    return True
