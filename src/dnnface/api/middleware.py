"""Middleware: API key authentication."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from dnnface.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _matches(candidate: str | None, expected: str) -> bool:
    if candidate is None:
        return False
    return secrets.compare_digest(candidate.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_header_scheme)],
) -> None:
    """Check the request's key against the configured API key.

    If no API key is configured (DNNFACE_API_KEY not set), all requests pass.
    Otherwise the key is read from 'Authorization: Bearer <key>' or, failing
    that, from the 'X-API-Key' header.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    bearer_key = credentials.credentials if credentials is not None else None
    if _matches(bearer_key, settings.api_key) or _matches(header_key, settings.api_key):
        return

    logger.warning("Rejected request to %s: invalid or missing API key", request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
