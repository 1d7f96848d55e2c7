"""HMAC-SHA256 verification of gateway webhook deliveries.

The gateway signs `id:<data id>;request-id:<x-request-id>;ts:<ts>;` with the
shared secret and sends `x-signature: ts=<ts>,v1=<hex digest>`. Parts whose
value is absent are left out of the manifest entirely.
"""

import hashlib
import hmac


def parse_signature_header(x_signature: str | None) -> tuple[str | None, str | None]:
    """Return `(ts, v1)` from an `x-signature` header value."""

    ts = None
    v1 = None
    for part in (x_signature or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            ts = value.strip() or None
        elif key == "v1":
            v1 = value.strip() or None
    return ts, v1


def build_manifest(data_id: str | None, x_request_id: str | None, ts: str) -> str:
    parts = []
    if data_id:
        parts.append(f"id:{data_id.lower()}")
    if x_request_id:
        parts.append(f"request-id:{x_request_id}")
    parts.append(f"ts:{ts}")
    return ";".join(parts) + ";"


def compute_signature(secret: str, manifest: str) -> str:
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(
    secret: str | None,
    x_signature: str | None,
    x_request_id: str | None,
    data_id: str | None,
) -> bool:
    """True only when a secret is configured and the header carries a matching `v1`."""

    if not secret or not secret.strip() or not x_signature:
        return False
    ts, v1 = parse_signature_header(x_signature)
    if not ts or not v1:
        return False
    expected = compute_signature(secret, build_manifest(data_id, x_request_id, ts))
    return hmac.compare_digest(expected.lower(), v1.lower())


def sign_delivery(secret: str, data_id: str | None, x_request_id: str | None, ts: str) -> str:
    """Build an `x-signature` header value; used by tooling and tests."""

    return f"ts={ts},v1={compute_signature(secret, build_manifest(data_id, x_request_id, ts))}"
