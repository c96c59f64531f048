"""Environment-driven configuration for the connect service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final, Mapping, Tuple

from tink_connect.core.claims import PROCESSED_TTL_SECONDS, PROCESSING_TTL_SECONDS
from tink_connect.core.errors import ConfigurationError
from tink_connect.core.provider import DEFAULT_API_URL, DEFAULT_DATA_SCOPE, DEFAULT_LINK_URL

logger = logging.getLogger("tink-connect.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _get(env: Mapping[str, str], key: str, default: str | None = None) -> str | None:
    value = env.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _number(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"{key} must not be negative")
    return value


@dataclass(frozen=True)
class Settings:
    """
    Process-wide configuration loaded once at startup.
    Secrets held here are never logged.
    """

    state_secret: str
    tink_client_id: str
    tink_client_secret: str
    tink_redirect_uri: str
    tink_api_url: str = DEFAULT_API_URL
    tink_link_url: str = DEFAULT_LINK_URL
    tink_data_scope: str = DEFAULT_DATA_SCOPE
    tink_http_timeout: float = 10.0
    tink_webhook_secret: str | None = None
    redis_url: str | None = None
    redis_socket_timeout: float = 2.0
    client_url: str = "http://localhost:3000"
    claim_processing_ttl: int = PROCESSING_TTL_SECONDS
    claim_processed_ttl: int = PROCESSED_TTL_SECONDS
    claim_sweep_interval: float = 300.0
    debug: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from *env* (defaults to ``os.environ``).

        Raises
        ------
        ConfigurationError
            When a required variable is missing or a value is malformed.
        """
        env = os.environ if env is None else env

        missing = [
            key
            for key in ("STATE_SECRET", "TINK_CLIENT_ID", "TINK_CLIENT_SECRET", "TINK_REDIRECT_URI")
            if not _get(env, key)
        ]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        processing_ttl = int(_number(env, "CLAIM_PROCESSING_TTL", PROCESSING_TTL_SECONDS))
        processed_ttl = int(_number(env, "CLAIM_PROCESSED_TTL", PROCESSED_TTL_SECONDS))
        if processing_ttl <= 0 or processed_ttl <= 0:
            raise ConfigurationError("Claim TTLs must be positive")
        if processed_ttl <= processing_ttl:
            raise ConfigurationError("CLAIM_PROCESSED_TTL must exceed CLAIM_PROCESSING_TTL")

        settings = cls(
            state_secret=_get(env, "STATE_SECRET") or "",
            tink_client_id=_get(env, "TINK_CLIENT_ID") or "",
            tink_client_secret=_get(env, "TINK_CLIENT_SECRET") or "",
            tink_redirect_uri=_get(env, "TINK_REDIRECT_URI") or "",
            tink_api_url=_get(env, "TINK_API_URL", DEFAULT_API_URL) or DEFAULT_API_URL,
            tink_link_url=_get(env, "TINK_LINK_URL", DEFAULT_LINK_URL) or DEFAULT_LINK_URL,
            tink_data_scope=_get(env, "TINK_DATA_SCOPE", DEFAULT_DATA_SCOPE) or DEFAULT_DATA_SCOPE,
            tink_http_timeout=_number(env, "TINK_HTTP_TIMEOUT", 10.0),
            tink_webhook_secret=_get(env, "TINK_WEBHOOK_SECRET"),
            redis_url=_get(env, "REDIS_URL"),
            redis_socket_timeout=_number(env, "REDIS_SOCKET_TIMEOUT", 2.0),
            client_url=_get(env, "CLIENT_URL", "http://localhost:3000") or "http://localhost:3000",
            claim_processing_ttl=processing_ttl,
            claim_processed_ttl=processed_ttl,
            claim_sweep_interval=_number(env, "CLAIM_SWEEP_INTERVAL", 300.0),
            debug=_truthy(env.get("TINK_CONNECT_DEBUG")),
        )

        if not settings.redis_url:
            logger.warning(
                "REDIS_URL not set – using in-process claim store. "
                "Duplicate callbacks are only deduplicated within this process."
            )
        if not settings.tink_webhook_secret:
            logger.info("TINK_WEBHOOK_SECRET not set – webhook endpoint will reject deliveries.")
        return settings
