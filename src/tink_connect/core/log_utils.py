"""Structured logging helpers for connect-core components.

This module purposefully restricts **which** contextual attributes are attached
to log records in order to avoid accidentally leaking secrets.  All helpers
ONLY inject the following *non-sensitive* fields:

- ``user_id``        – Internal user identifier (first 8 chars kept)
- ``code``           – Authorization code, masked to its first 6 chars
- ``correlation_id`` – Request correlation id set by the HTTP middleware

State tokens, access tokens and full authorization codes are never logged.

Usage
-----
>>> from tink_connect.core.log_utils import get_connect_logger
>>> log = get_connect_logger(code="9f3a7c1b2d", correlation_id="abc123")
>>> log.info("Claim granted")
INFO tink-connect.core Claim granted [code=9f3a7c**** correlation_id=abc123]
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping


def mask_code(code: str | None, keep: int = 6) -> str:
    """Return *code* truncated to *keep* characters followed by ``****``."""
    if not code:
        return "-"
    return f"{code[:keep]}****"


class _ConnectLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted connect context into log records."""

    extra_keys = ("user_id", "code", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if not extra or extra.get(k) is None:
                continue
            if k == "code":
                extra_clean[k] = mask_code(str(extra[k]))
            elif k == "user_id":
                extra_clean[k] = str(extra[k])[:8]
            else:
                extra_clean[k] = extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        # merge but do not overwrite call-site provided extras
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        context = " ".join(f"{k}={v}" for k, v in self.extra.items())
        return (f"{msg} [{context}]" if context else msg), kwargs


def get_connect_logger(
    *,
    base_logger_name: str = "tink-connect.core",
    user_id: str | None = None,
    code: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with connect context."""
    logger = logging.getLogger(base_logger_name)
    return _ConnectLoggerAdapter(
        logger,
        {"user_id": user_id, "code": code, "correlation_id": correlation_id},
    )
