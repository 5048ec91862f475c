"""HMAC-SHA256 webhook signing.

Lives in the worker package because it needs endpoint secrets; the API
process never imports it.
"""

import hashlib
import hmac
import json
import time
import uuid
from typing import Any


class SigningFailure(Exception):
    """The payload could not be signed (missing secret or crypto failure)."""


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Compact UTF-8 JSON: the exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign(payload: bytes, secret: str | bytes) -> str:
    """Return the hex HMAC-SHA256 of payload under secret."""
    if not secret:
        raise SigningFailure("Endpoint has no signing secret")
    key = secret.encode("utf-8") if isinstance(secret, str) else secret
    try:
        return hmac.new(key, payload, hashlib.sha256).hexdigest()
    except (TypeError, ValueError) as e:
        raise SigningFailure(f"Failed to sign webhook payload: {e}") from e


def verify(payload: bytes, signature: str, secret: str | bytes) -> bool:
    """Constant-time check of a signature. Never raises."""
    try:
        expected = sign(payload, secret)
        return hmac.compare_digest(expected, signature)
    except (SigningFailure, TypeError):
        return False


def build_signed_headers(
    body: bytes,
    secret: str | bytes,
    event_type: str,
    delivery_id: uuid.UUID,
    timestamp_ms: int | None = None,
) -> dict[str, str]:
    """Headers for an outbound webhook POST.

    The timestamp travels alongside the signature for replay-window checks
    by the receiver; it is not part of the MAC.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return {
        "Content-Type": "application/json",
        "User-Agent": "relay-webhooks/0.1",
        "X-Signature": sign(body, secret),
        "X-Timestamp": str(timestamp_ms),
        "X-Event-Type": event_type,
        "X-Delivery-Id": str(delivery_id),
    }
