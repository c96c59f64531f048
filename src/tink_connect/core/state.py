"""Signed state tokens for the Tink Link redirect.

The *state* parameter carries the authenticated user's identity through the
provider redirect and protects the callback against CSRF.  The token is two
base64url segments joined by a dot::

    base64url(<payload JSON>) "." base64url(HMAC-SHA256(secret, <payload JSON>))

where the payload is ``{"userId": ..., "timestamp": <ms>, "nonce": ...}``.
Tokens older than ``max_age_seconds`` (10 minutes by default) are rejected.

Verification never raises: every failure yields ``None`` so the callback can
send the user back to restart the connect flow.

Logging
-------
Only the (truncated) user id is ever logged; the token and the HMAC secret are
*never* written to logs.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import secrets
from hashlib import sha256
from typing import Final

from tink_connect.core.clock import Clock, default_clock, to_millis
from tink_connect.core.errors import ConfigurationError
from tink_connect.core.models import StatePayload

_LOG = logging.getLogger("tink-connect.core.state")

DEFAULT_MAX_AGE_SECONDS: Final[int] = 10 * 60
_NONCE_BYTES: Final[int] = 16


def _b64e(data: bytes) -> str:
    """Base64-URL encode *without* padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64d(data: str) -> bytes:
    """Decode base64-URL data that may lack padding."""
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len)


class StateTokenCodec:
    """Create and verify HMAC-signed, time-boxed state tokens."""

    def __init__(
        self,
        secret: str,
        *,
        clock: Clock = default_clock,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    ) -> None:
        if not secret:
            raise ConfigurationError("STATE_SECRET is required to sign state tokens")
        self._secret: bytes = secret.encode("utf-8")
        self._clock = clock
        self.max_age_ms: int = max_age_seconds * 1000

    def _sign(self, payload_json: str) -> str:
        digest = hmac.new(self._secret, payload_json.encode("utf-8"), sha256).digest()
        return _b64e(digest)

    def create(self, user_id: str) -> str:
        """Return a fresh state token for *user_id*."""
        if not user_id:
            raise ValueError("user_id must be a non-empty string")
        payload = StatePayload(
            user_id=user_id,
            timestamp=to_millis(self._clock),
            nonce=_b64e(secrets.token_bytes(_NONCE_BYTES)),
        )
        payload_json = json.dumps(payload.to_wire(), separators=(",", ":"))
        token = f"{_b64e(payload_json.encode('utf-8'))}.{self._sign(payload_json)}"
        _LOG.debug("Built state for user_id=%s****", user_id[:6])
        return token

    def verify(self, token: str | None) -> StatePayload | None:
        """Return the payload when *token* is authentic and fresh, else ``None``."""
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 2 or not all(parts):
            _LOG.debug("Rejected state: unexpected format")
            return None

        encoded_payload, signature = parts
        try:
            raw_payload = _b64d(encoded_payload)
            payload_json = raw_payload.decode("utf-8")
        except (ValueError, binascii.Error):
            _LOG.debug("Rejected state: payload cannot be decoded")
            return None
        # Non-canonical base64 (stray or padding-bit changes) decodes to the same bytes
        if _b64e(raw_payload) != encoded_payload:
            _LOG.debug("Rejected state: non-canonical encoding")
            return None

        expected = self._sign(payload_json)
        if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
            _LOG.debug("Rejected state: signature mismatch")
            return None

        try:
            data = json.loads(payload_json)
        except ValueError:
            _LOG.debug("Rejected state: payload is not JSON")
            return None
        if not isinstance(data, dict):
            return None

        user_id = data.get("userId")
        timestamp = data.get("timestamp")
        nonce = data.get("nonce")
        if (
            not isinstance(user_id, str)
            or not user_id
            or not isinstance(nonce, str)
            or not nonce
            or isinstance(timestamp, bool)
            or not isinstance(timestamp, int)
            or timestamp <= 0
        ):
            _LOG.debug("Rejected state: missing fields")
            return None

        if to_millis(self._clock) - timestamp > self.max_age_ms:
            _LOG.debug("Rejected state for user_id=%s****: expired", user_id[:6])
            return None

        _LOG.debug("Verified state for user_id=%s****", user_id[:6])
        return StatePayload(user_id=user_id, timestamp=timestamp, nonce=nonce)
