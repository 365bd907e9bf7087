from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import UTC, datetime

SIGNATURE_HEADER = "X-HubSpot-Signature-v3"
TIMESTAMP_HEADER = "X-HubSpot-Request-Timestamp"


def compute_webhook_signature(
    *,
    secret: str,
    method: str,
    uri: str,
    body: bytes,
    timestamp: str,
) -> str:
    source = (
        method.upper().encode("utf-8")
        + uri.encode("utf-8")
        + body
        + timestamp.encode("utf-8")
    )
    digest = hmac.new(secret.encode("utf-8"), source, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook_signature(
    *,
    secret: str,
    method: str,
    uri: str,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    max_age_seconds: int,
    now: datetime | None = None,
) -> None:
    """Validate a v3 webhook signature, raising ``ValueError`` on mismatch.

    The timestamp header is epoch milliseconds; requests older than
    ``max_age_seconds`` are rejected to limit replay of captured deliveries.
    """
    if not signature or not timestamp:
        raise ValueError("Missing webhook signature headers")

    try:
        sent_at = datetime.fromtimestamp(int(timestamp) / 1000, UTC)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValueError("Malformed webhook timestamp") from exc

    current = now or datetime.now(UTC)
    if abs((current - sent_at).total_seconds()) > max_age_seconds:
        raise ValueError("Webhook timestamp outside the accepted window")

    expected = compute_webhook_signature(
        secret=secret,
        method=method,
        uri=uri,
        body=body,
        timestamp=timestamp,
    )
    if not hmac.compare_digest(expected, signature):
        raise ValueError("Invalid webhook signature")


def admin_token_matches(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
