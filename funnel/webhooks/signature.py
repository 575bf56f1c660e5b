from __future__ import annotations

import hashlib
import hmac
import time

from funnel.errors import SignatureVerificationError

STRIPE_TOLERANCE_SECONDS = 300


def _digest(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={_digest(payload, secret, ts)}"


# stripe-signature: t=<unix ts>,v1=<hex hmac>[,v1=...]; other schemes (v0) are ignored
def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t" and timestamp is None:
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError("invalid stripe-signature timestamp") from None
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise SignatureVerificationError("invalid stripe-signature format")
    if timestamp <= 0:
        raise SignatureVerificationError("invalid stripe-signature timestamp")
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    signature: str | None,
    secret: str,
    tolerance: int = STRIPE_TOLERANCE_SECONDS,
    now: int | None = None,
) -> None:
    if not secret:
        raise SignatureVerificationError("webhook secret not configured")
    if not signature:
        raise SignatureVerificationError("missing stripe-signature")

    timestamp, signatures = _parse_header(signature)

    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance:
        raise SignatureVerificationError("stale stripe-signature")

    expected = _digest(payload, secret, timestamp)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureVerificationError("invalid stripe-signature")
