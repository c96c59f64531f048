"""Bank-connection HTTP endpoints.

Handlers are intentionally thin:

1. Parse and validate HTTP-layer parameters.
2. Delegate business logic to ``ConnectService``.
3. Return an appropriate Starlette ``Response`` type.

The base path is configurable (default: ``/api``) so that reverse-proxies can
mount the application under arbitrary prefixes.

SECURITY NOTE
-------------
• No raw secrets (state tokens, authorization codes, access tokens, client or
  webhook secrets) are ever logged.
• Correlation IDs, if present in ``request.state.correlation_id``, are included
  in INFO logs to aid troubleshooting.

This module is HTTP-only and MUST remain free from business logic.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from tink_connect.core.errors import ProviderError
from tink_connect.core.webhook import (
    SIGNATURE_HEADER,
    parse_webhook_payload,
    verify_webhook_signature,
)
from tink_connect.servers.context import AppContext

_LOG = logging.getLogger("tink-connect.servers.routes")

TRUSTED_USER_HEADER = "X-Authenticated-User"


def _ctx(request: Request) -> AppContext:
    return request.app.state.context


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "-")


async def header_authenticator(request: Request) -> str | None:
    """Read the user id set by the upstream authentication proxy."""
    user_id = request.headers.get(TRUSTED_USER_HEADER, "").strip()
    return user_id or None


async def log_webhook_event(payload: Mapping[str, Any]) -> None:
    """Default webhook handler: record the event name only."""
    context = payload.get("context")
    if not isinstance(context, Mapping):
        context = {}
    _LOG.info(
        "Received Tink webhook event=%s user=%s",
        payload.get("event"),
        str(context.get("externalUserId") or context.get("userId") or "-")[:8],
    )


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def register_connect_routes(app: Starlette, *, base_path: str = "/api") -> None:
    """Attach the connect endpoints to *app* under *base_path*."""

    # ----- GET /api/tink/callback ----------------------------------------- #
    async def _callback(request: Request) -> Response:
        ctx = _ctx(request)
        query: dict[str, Any] = {}
        for key in request.query_params.keys():
            values = request.query_params.getlist(key)
            # repeated keys are ambiguous; let the service reject them
            query[key] = values[0] if len(values) == 1 else values
        outcome = await ctx.service.handle_callback(
            query, correlation_id=_correlation_id(request)
        )
        _LOG.info(
            "Tink callback connected=%s reason=%s correlation_id=%s",
            outcome.connected,
            outcome.reason.value if outcome.reason else "-",
            _correlation_id(request),
        )
        return RedirectResponse(
            outcome.redirect_url(ctx.settings.client_url), status_code=302
        )

    # ----- POST /api/tink/connect ----------------------------------------- #
    async def _connect(request: Request) -> Response:
        ctx = _ctx(request)
        user_id = await ctx.authenticator(request)
        if not user_id:
            return JSONResponse({"error": "User not authenticated"}, status_code=401)

        body: Any = {}
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except ValueError:
                return JSONResponse({"error": "Invalid parameters"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid parameters"}, status_code=400)
        market = body.get("market", "FR")
        locale = body.get("locale", "en_US")
        if not isinstance(market, str) or not isinstance(locale, str) or not market or not locale:
            return JSONResponse(
                {"error": "Invalid parameters", "details": "market and locale must be strings"},
                status_code=400,
            )

        try:
            link = await ctx.service.start_connect(user_id, market=market, locale=locale)
        except ProviderError as exc:
            _LOG.warning(
                "Connect initiation failed: %s correlation_id=%s", exc, _correlation_id(request)
            )
            return JSONResponse({"error": "Failed to generate connection URL"}, status_code=502)

        _LOG.info(
            "Connect URL issued market=%s correlation_id=%s", market, _correlation_id(request)
        )
        return JSONResponse(link.to_json())

    # ----- POST /api/webhook/tink ----------------------------------------- #
    async def _webhook(request: Request) -> Response:
        ctx = _ctx(request)
        signature = request.headers.get(SIGNATURE_HEADER)
        if not signature:
            return JSONResponse({"error": "Missing signature header"}, status_code=400)
        secret = ctx.settings.tink_webhook_secret
        if not secret:
            _LOG.error("Webhook received but TINK_WEBHOOK_SECRET is not configured")
            return JSONResponse({"error": "Webhook not configured"}, status_code=503)

        body = await request.body()
        if not verify_webhook_signature(signature, body, secret):
            _LOG.warning("Invalid webhook signature correlation_id=%s", _correlation_id(request))
            return JSONResponse({"error": "Invalid signature"}, status_code=401)
        try:
            payload = parse_webhook_payload(body)
        except ValueError:
            return JSONResponse({"error": "Invalid payload"}, status_code=400)

        await ctx.webhook_handler(payload)
        return JSONResponse({"received": True})

    app.add_route(f"{base_path}/tink/callback", _callback, methods=["GET"])
    app.add_route(f"{base_path}/tink/connect", _connect, methods=["POST"])
    app.add_route(f"{base_path}/webhook/tink", _webhook, methods=["POST"])
