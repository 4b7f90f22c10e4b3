"""API key authentication for the webhook management API."""

import secrets
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from fasthook.config import Settings, get_settings

ROOT_PRINCIPAL = "root"


@dataclass
class AuthContext:
    """Who is calling the management API."""

    principal: str
    is_root: bool


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


def presented_key(x_api_key: str | None, authorization: str | None) -> str | None:
    """Extract the API key from X-API-Key or an ``Authorization: Bearer`` header."""
    if x_api_key:
        return x_api_key
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return None


async def get_auth_context(
    x_api_key: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    """Authenticate the caller against the root API key."""
    key = presented_key(x_api_key, authorization)
    if key is None:
        raise _unauthorized("API key required")

    expected = settings.root_api_key.get_secret_value()
    if not secrets.compare_digest(key.encode("utf-8"), expected.encode("utf-8")):
        raise _unauthorized("Invalid API key")

    return AuthContext(principal=ROOT_PRINCIPAL, is_root=True)


Auth = Annotated[AuthContext, Depends(get_auth_context)]
