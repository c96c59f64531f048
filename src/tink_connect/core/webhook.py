"""Tink webhook signature verification.

Tink signs every webhook delivery with the header::

    X-Tink-Signature: t=<unix seconds>,v1=<hex HMAC-SHA256>

The signed message is ``"<t>.<raw request body>"`` under the webhook secret.
Deliveries whose timestamp is more than five minutes away from the local clock
are rejected to bound replays.  Event handling beyond this check is left to an
injected handler.
"""

from __future__ import annotations

import hmac
import json
import logging
from hashlib import sha256
from typing import Any, Final

from tink_connect.core.clock import Clock, default_clock

_LOG = logging.getLogger("tink-connect.core.webhook")

SIGNATURE_HEADER: Final[str] = "X-Tink-Signature"
MAX_SKEW_SECONDS: Final[int] = 5 * 60


def _parse_header(header: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep and key in ("t", "v1"):
            values[key] = value
    return values


def verify_webhook_signature(
    header: str | None,
    body: bytes,
    secret: str,
    *,
    clock: Clock = default_clock,
    max_skew_seconds: int = MAX_SKEW_SECONDS,
) -> bool:
    """Return ``True`` when *header* is a valid, fresh signature of *body*."""
    if not header or not secret:
        return False
    values = _parse_header(header)
    ts, signature = values.get("t"), values.get("v1")
    if not ts or not signature or not (ts.isascii() and ts.isdigit()):
        _LOG.debug("Webhook signature header missing t or v1")
        return False
    if abs(int(clock()) - int(ts)) > max_skew_seconds:
        _LOG.warning("Webhook timestamp outside the %ss window", max_skew_seconds)
        return False
    expected = hmac.new(
        secret.encode("utf-8"), ts.encode("ascii") + b"." + body, sha256
    ).hexdigest()
    return hmac.compare_digest(signature.lower().encode("ascii", "replace"), expected.encode("ascii"))


def parse_webhook_payload(body: bytes) -> dict[str, Any]:
    """Decode a webhook body; raises ``ValueError`` on malformed payloads."""
    data = json.loads(body.decode("utf-8"))
    if not isinstance(data, dict) or "event" not in data:
        raise ValueError("webhook payload missing event")
    return data
