"""HMAC signing of webhook payloads.

Payloads are signed over their canonical JSON encoding: object keys sorted
recursively, compact separators, UTF-8, and no NaN/Infinity. The same bytes
are sent as the request body so receivers can verify the raw body.
"""

import hashlib
import hmac
import json
import secrets
from typing import Any

SECRET_BYTES = 32


def canonical_json(payload: Any) -> bytes:
    """Serialize a payload to its canonical byte representation.

    Raises:
        TypeError: If the payload contains a value JSON cannot represent
        ValueError: If the payload contains NaN/Infinity or a circular reference
    """
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def compute_payload_hash(payload: Any) -> str:
    """Compute a SHA-256 hash of the canonical payload for deduplication."""
    return hashlib.sha256(canonical_json(payload)).hexdigest()


def generate_secret() -> str:
    """Generate a new webhook secret (32 random bytes, hex-encoded)."""
    return secrets.token_hex(SECRET_BYTES)


def sign_payload(payload: Any, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature of a payload.

    Args:
        payload: JSON-serializable payload
        secret: Shared webhook secret

    Returns:
        Lowercase hex digest
    """
    return hmac.new(secret.encode("utf-8"), canonical_json(payload), hashlib.sha256).hexdigest()


def verify_signature(payload: Any, signature: Any, secret: Any) -> bool:
    """Verify a payload signature in constant time.

    Returns False for any malformed input instead of raising.
    """
    if not isinstance(signature, str) or not isinstance(secret, str):
        return False
    try:
        expected = sign_payload(payload, secret)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))
    except (TypeError, ValueError, RecursionError):
        return False
