"""Connect core package.

This namespace hosts the **HTTP-agnostic** building blocks of the Tink bank
connection flow.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
state
    HMAC-signed, time-boxed ``state`` token codec.
claims
    At-most-once claim store for single-use authorization codes.
retry
    Retry-with-backoff wrapper around ``httpx.AsyncClient``.
provider
    Minimal Tink OAuth client.
sync
    Downstream sync interface and background task runner.
service
    Callback orchestration and connect initiation.
webhook
    Webhook signature verification.
models
    Immutable dataclasses shared by the modules above.
errors
    Exception types and redirect reasons.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

All public objects are re-exported here for convenience.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .state import StateTokenCodec  # noqa: F401
from .claims import ClaimStore, MemoryClaimStore, RedisClaimStore, run_cleanup_loop  # noqa: F401
from .retry import RetryConfig, RetryingHttpClient  # noqa: F401
from .provider import TinkClient  # noqa: F401
from .sync import AccountSyncer, BackgroundSyncRunner, LoggingAccountSyncer  # noqa: F401
from .service import ConnectService  # noqa: F401
from .webhook import verify_webhook_signature  # noqa: F401
from .models import (  # noqa: F401
    CallbackOutcome,
    CallbackParams,
    ClaimStats,
    ConnectLink,
    StatePayload,
    SyncResult,
    TokenResponse,
)
from .errors import (  # noqa: F401
    CallbackError,
    ConfigurationError,
    ProviderError,
    RedirectReason,
    RetryExhaustedError,
)
from .log_utils import get_connect_logger  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # state
    "StateTokenCodec",
    # claims
    "ClaimStore",
    "MemoryClaimStore",
    "RedisClaimStore",
    "run_cleanup_loop",
    # retry
    "RetryConfig",
    "RetryingHttpClient",
    # provider
    "TinkClient",
    # sync
    "AccountSyncer",
    "BackgroundSyncRunner",
    "LoggingAccountSyncer",
    # service
    "ConnectService",
    # webhook
    "verify_webhook_signature",
    # models
    "CallbackOutcome",
    "CallbackParams",
    "ClaimStats",
    "ConnectLink",
    "StatePayload",
    "SyncResult",
    "TokenResponse",
    # errors
    "CallbackError",
    "ConfigurationError",
    "ProviderError",
    "RedirectReason",
    "RetryExhaustedError",
    # logging helpers
    "get_connect_logger",
]
