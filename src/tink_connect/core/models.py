"""Typed, immutable records used by the connect core."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence
from urllib.parse import urlencode

from tink_connect.core.errors import CallbackError, RedirectReason


@dataclass(frozen=True, slots=True)
class StatePayload:
    """Verified contents of a state token."""

    user_id: str
    timestamp: int  # milliseconds since the epoch
    nonce: str

    def to_wire(self) -> dict[str, Any]:
        return {"userId": self.user_id, "timestamp": self.timestamp, "nonce": self.nonce}


@dataclass(frozen=True, slots=True)
class TokenResponse:
    """Token endpoint response (client-credentials or user token)."""

    access_token: str
    expires_in: int
    token_type: str = "bearer"
    scope: str = ""
    refresh_token: str | None = None
    id_hint: str | None = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "TokenResponse":
        access_token = data.get("access_token")
        if not access_token:
            raise ValueError("Token response missing access_token")
        return cls(
            access_token=str(access_token),
            expires_in=int(data.get("expires_in", 0)),
            token_type=str(data.get("token_type", "bearer")),
            scope=str(data.get("scope", "")),
            refresh_token=data.get("refresh_token"),
            id_hint=data.get("id_hint"),
        )


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome reported by the downstream account sync collaborator."""

    accounts: Sequence[Any] = ()
    count: int = 0


@dataclass(frozen=True, slots=True)
class ConnectLink:
    """Result of connect initiation."""

    url: str
    message: str = "Redirect user to this URL to connect their bank account"

    def to_json(self) -> dict[str, str]:
        return {"url": self.url, "message": self.message}


@dataclass(frozen=True, slots=True)
class ClaimStats:
    """Snapshot of claim-store health for monitoring."""

    reachable: bool
    processing: int = 0


_CALLBACK_KEYS = ("code", "state", "error", "credentialsId", "credentials_id")


@dataclass(frozen=True, slots=True)
class CallbackParams:
    """Validated query parameters of the provider redirect."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    credentials_id: str | None = None

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "CallbackParams":
        """Build from a query mapping, rejecting malformed values.

        Raises
        ------
        CallbackError
            With ``invalid_parameters`` when a known key holds something other
            than a single non-empty string.
        """
        values: dict[str, str | None] = {}
        for key in _CALLBACK_KEYS:
            raw = query.get(key)
            if raw is None:
                values[key] = None
                continue
            if not isinstance(raw, str) or not raw.strip():
                raise CallbackError(
                    RedirectReason.INVALID_PARAMETERS, f"malformed query parameter {key}"
                )
            values[key] = raw
        return cls(
            code=values["code"],
            state=values["state"],
            error=values["error"],
            # Tink sometimes sends the snake_case variant
            credentials_id=values["credentialsId"] or values["credentials_id"],
        )


@dataclass(frozen=True, slots=True)
class CallbackOutcome:
    """Terminal result of one callback invocation."""

    connected: bool
    reason: RedirectReason | None = None
    user_id: str | None = field(default=None, compare=False)

    @classmethod
    def success(cls, user_id: str | None = None) -> "CallbackOutcome":
        return cls(connected=True, user_id=user_id)

    @classmethod
    def failure(cls, reason: RedirectReason) -> "CallbackOutcome":
        return cls(connected=False, reason=reason)

    def redirect_url(self, client_url: str, path: str = "/accounts") -> str:
        """Render the client-facing redirect target."""
        if self.connected:
            query = {"connected": "true"}
        else:
            reason = self.reason or RedirectReason.UNEXPECTED_ERROR
            query = {"error": reason.value}
        return f"{client_url.rstrip('/')}{path}?{urlencode(query)}"
