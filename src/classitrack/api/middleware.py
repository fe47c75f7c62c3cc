"""Optional shared-secret authentication for every ``/api/v1`` route.

Clients present the key either as ``Authorization: Bearer <key>`` or, for
camera clients that cannot set an Authorization header, as
``X-API-Key: <key>``. With ``CLASSITRACK_API_KEY`` unset every request
passes.
"""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

_bearer_scheme = HTTPBearer(auto_error=False)
_header_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


def _configured_key(request: Request) -> str | None:
    key: str | None = request.app.state.settings.api_key
    return key


def _key_matches(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return secrets.compare_digest(presented.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Security(_header_scheme)],
) -> None:
    """Reject the request with 401 unless it carries the configured key."""
    expected = _configured_key(request)
    if expected is None:
        return

    presented = credentials.credentials if credentials is not None else header_key
    if not _key_matches(presented, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
