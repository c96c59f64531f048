"""Correlation ID middleware for request tracing.

Takes the incoming ``X-Correlation-ID`` header or generates a UUID4 hex value,
sets it in ``request.state.correlation_id`` for application use and
propagates it to the response headers.

Secrets MUST NOT be logged. The correlation ID is a random UUID4 hex string.
"""

from __future__ import annotations

import logging
import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

_HEADER_NAME = "X-Correlation-ID"
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_logger = logging.getLogger("tink-connect.correlation")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that attaches a per-request correlation ID."""

    def __init__(self, app: ASGIApp, header_name: str = _HEADER_NAME) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        incoming = request.headers.get(self.header_name)
        # Caller-supplied ids end up in logs; accept only a safe charset
        correlation_id = incoming if incoming and _VALID_ID.match(incoming) else uuid.uuid4().hex
        request.state.correlation_id = correlation_id
        _logger.debug(
            "%s %s correlation_id=%s", request.method, request.url.path, correlation_id
        )
        response = await call_next(request)
        response.headers[self.header_name] = correlation_id
        return response
