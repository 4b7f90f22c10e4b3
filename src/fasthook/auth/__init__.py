"""Authentication module."""

from fasthook.auth.dependencies import Auth, AuthContext, get_auth_context

__all__ = [
    "Auth",
    "AuthContext",
    "get_auth_context",
]
