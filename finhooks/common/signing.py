"""HMAC-SHA256 signing of outbound webhook bodies.

Canonical string: "{timestamp_ms}.{body}". The header sent with every
delivery is `X-Webhook-Signature: t=<unix ms>,v1=<hex digest>`; integrators
recompute the digest with their secret and reject stale timestamps.

SECURITY: never log secrets or signature values.
"""

import hashlib
import hmac
import time

from finhooks.common.config import settings

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_ID_HEADER = "X-Event-Id"
EVENT_TYPE_HEADER = "X-Event-Type"


def _as_bytes(body: str | bytes) -> bytes:
    return body if isinstance(body, bytes) else body.encode("utf-8")


def now_ms() -> int:
    return int(time.time() * 1000)


def sign(secret: str, timestamp_ms: int, body: str | bytes) -> str:
    """Hex HMAC-SHA256 of `"{timestamp_ms}.{body}"` keyed by `secret`."""

    canonical = f"{timestamp_ms}.".encode("ascii") + _as_bytes(body)
    return hmac.new(secret.encode("utf-8"), canonical, hashlib.sha256).hexdigest()


def signature_header(secret: str, timestamp_ms: int, body: str | bytes) -> str:
    """Value of the signature header for one delivery attempt."""

    return f"t={timestamp_ms},v1={sign(secret, timestamp_ms, body)}"


def parse_signature_header(header: str) -> tuple[int, list[str]] | None:
    """Split `t=...,v1=...` into the timestamp and every v1 digest.

    Returns None when the header is malformed or has no timestamp/digest.
    """

    timestamp: int | None = None
    digests: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            return None
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None
        elif key == "v1":
            digests.append(value)
    if timestamp is None or not digests:
        return None
    return timestamp, digests


def verify(
    secret: str,
    header: str,
    body: str | bytes,
    tolerance_ms: int | None = None,
    current_ms: int | None = None,
) -> bool:
    """Check a signature header against `body`.

    False when the digest does not match or the embedded timestamp is more than
    `tolerance_ms` away from the verifier's clock (default:
    `signature_tolerance_seconds` from settings).
    """

    parsed = parse_signature_header(header)
    if parsed is None:
        return False
    timestamp, digests = parsed
    current = now_ms() if current_ms is None else current_ms
    if tolerance_ms is None:
        tolerance_ms = settings.signature_tolerance_seconds * 1000
    if abs(current - timestamp) > tolerance_ms:
        return False
    expected = sign(secret, timestamp, body)
    return any(hmac.compare_digest(expected, digest) for digest in digests)
