"""Starlette application setup for the connect service."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from tink_connect.core.claims import (
    ClaimStore,
    MemoryClaimStore,
    RedisClaimStore,
    run_cleanup_loop,
)
from tink_connect.core.provider import TinkClient, build_http_client
from tink_connect.core.retry import RetryingHttpClient
from tink_connect.core.service import ConnectService
from tink_connect.core.state import StateTokenCodec
from tink_connect.core.sync import AccountSyncer, LoggingAccountSyncer
from tink_connect.servers.context import AppContext, Authenticator, WebhookHandler
from tink_connect.servers.correlation import CorrelationIdMiddleware
from tink_connect.servers.routes import (
    header_authenticator,
    log_webhook_event,
    register_connect_routes,
)
from tink_connect.utils.environment import Settings

logger = logging.getLogger("tink-connect.servers.app")

_DRAIN_TIMEOUT_SECONDS = 10.0


async def health_check(request: Request) -> JSONResponse:
    ctx: AppContext | None = getattr(request.app.state, "context", None)
    if ctx is None:
        return JSONResponse({"status": "starting"}, status_code=503)
    stats = await ctx.claims.stats()
    return JSONResponse(
        {
            "status": "ok" if stats.reachable else "degraded",
            "claim_store": {"reachable": stats.reachable, "processing": stats.processing},
        }
    )


def build_claim_store(settings: Settings) -> tuple[ClaimStore, Redis | None]:
    """Return the claim store for *settings* and the Redis client it owns, if any."""
    if not settings.redis_url:
        store = MemoryClaimStore(
            processing_ttl=settings.claim_processing_ttl,
            processed_ttl=settings.claim_processed_ttl,
        )
        return store, None
    redis = Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
    )
    store = RedisClaimStore(
        redis,
        processing_ttl=settings.claim_processing_ttl,
        processed_ttl=settings.claim_processed_ttl,
    )
    return store, redis


def create_app(
    settings: Settings | None = None,
    *,
    context: AppContext | None = None,
    syncer: AccountSyncer | None = None,
    authenticator: Authenticator = header_authenticator,
    webhook_handler: WebhookHandler = log_webhook_event,
) -> Starlette:
    """Build the ASGI application.

    When *context* is given it is used as-is (tests, embedding); otherwise the
    lifespan builds every dependency from *settings* (or the environment) and
    tears them down on shutdown.  Starlette's debug tracebacks follow
    ``Settings.debug`` of the settings or context passed in.
    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if context is not None:
            yield
            return

        logger.info("Tink connect service lifespan starting...")
        cfg = settings or Settings.from_env()
        claims, redis = build_claim_store(cfg)
        http = build_http_client(cfg.tink_http_timeout)
        provider = TinkClient(
            RetryingHttpClient(http),
            client_id=cfg.tink_client_id,
            client_secret=cfg.tink_client_secret,
            redirect_uri=cfg.tink_redirect_uri,
            api_url=cfg.tink_api_url,
            link_url=cfg.tink_link_url,
        )
        service = ConnectService(
            codec=StateTokenCodec(cfg.state_secret),
            claims=claims,
            provider=provider,
            syncer=syncer or LoggingAccountSyncer(),
            data_scope=cfg.tink_data_scope,
        )
        app.state.context = AppContext(
            settings=cfg,
            service=service,
            claims=claims,
            authenticator=authenticator,
            webhook_handler=webhook_handler,
        )

        if redis is not None and not await claims.ping():
            logger.warning("Redis unreachable at startup; claims will fail open until it recovers")

        stop = asyncio.Event()
        sweeper: asyncio.Task[None] | None = None
        if cfg.claim_sweep_interval > 0:
            sweeper = asyncio.create_task(
                run_cleanup_loop(claims, interval_seconds=cfg.claim_sweep_interval, stop=stop)
            )

        try:
            yield
        finally:
            logger.info("Tink connect service shutting down...")
            stop.set()
            if sweeper is not None:
                await sweeper
            await service.background.drain(timeout=_DRAIN_TIMEOUT_SECONDS)
            await http.aclose()
            if redis is not None:
                await redis.aclose()

    configured = context.settings if context is not None else settings
    app = Starlette(
        debug=bool(configured and configured.debug),
        middleware=[Middleware(CorrelationIdMiddleware)],
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context
    app.add_route("/healthz", health_check, methods=["GET"], include_in_schema=False)
    register_connect_routes(app)
    return app
