"""ConnectService – bank-connection flow orchestration.

Handlers in ``tink_connect.servers.routes`` call the two façade methods below:

``start_connect``
    Signs a state token for the authenticated user, asks Tink for a delegated
    authorization code and returns the Tink Link URL.
``handle_callback``
    Runs the callback state machine::

        parse params → provider error? → verify state → fast-path check
        → atomic claim → token exchange → spawn downstream sync → complete

    Only the caller that wins the atomic claim talks to the provider; every
    other concurrent or repeated delivery of the same code is answered as
    already connected.  A failed exchange releases the claim so the user can
    retry; a successful one is promoted to ``processed`` and blocks replays.

Every failure is converted into a :class:`~tink_connect.core.models.CallbackOutcome`;
nothing propagates to the HTTP layer.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from tink_connect.core.claims import ClaimStore
from tink_connect.core.errors import CallbackError, ProviderError, RedirectReason
from tink_connect.core.log_utils import get_connect_logger
from tink_connect.core.models import (
    CallbackOutcome,
    CallbackParams,
    ConnectLink,
    StatePayload,
    TokenResponse,
)
from tink_connect.core.provider import DEFAULT_DATA_SCOPE, TinkClient
from tink_connect.core.state import StateTokenCodec
from tink_connect.core.sync import AccountSyncer, BackgroundSyncRunner

_LOG = logging.getLogger("tink-connect.core.service")


class ConnectService:
    """Application service orchestrating the Tink connect flow."""

    def __init__(
        self,
        *,
        codec: StateTokenCodec,
        claims: ClaimStore,
        provider: TinkClient,
        syncer: AccountSyncer,
        db: Any = None,
        data_scope: str = DEFAULT_DATA_SCOPE,
        background: BackgroundSyncRunner | None = None,
    ) -> None:
        self.codec = codec
        self.claims = claims
        self.provider = provider
        self.syncer = syncer
        self.db = db
        self.data_scope = data_scope
        self.background = background or BackgroundSyncRunner()

    # ------------------------------------------------------------------ #
    # Connect initiation                                                 #
    # ------------------------------------------------------------------ #
    async def start_connect(
        self,
        user_id: str,
        *,
        market: str = "FR",
        locale: str = "en_US",
        id_hint: str | None = None,
    ) -> ConnectLink:
        """Return the Tink Link URL for *user_id* with a signed state embedded."""
        state = self.codec.create(user_id)
        client_token = await self.provider.get_client_token()
        code = await self.provider.create_delegated_grant(
            client_token.access_token,
            user_id=user_id,
            id_hint=id_hint or user_id,
        )
        url = self.provider.build_link_url(code, market=market, locale=locale, state=state)
        _LOG.info("Built Tink Link URL for user_id=%s**** market=%s", user_id[:6], market)
        return ConnectLink(url=url)

    # ------------------------------------------------------------------ #
    # Callback                                                           #
    # ------------------------------------------------------------------ #
    async def handle_callback(
        self, query: Mapping[str, Any], *, correlation_id: str | None = None
    ) -> CallbackOutcome:
        """Process one provider redirect and return its terminal outcome."""
        try:
            return await self._run_callback(query, correlation_id)
        except CallbackError as exc:
            _LOG.info("Callback rejected: %s (correlation_id=%s)", exc.reason.value, correlation_id)
            return CallbackOutcome.failure(exc.reason)
        except Exception:  # noqa: BLE001  # top-level boundary: always answer with a redirect
            _LOG.exception("Unexpected error in callback (correlation_id=%s)", correlation_id)
            return CallbackOutcome.failure(RedirectReason.UNEXPECTED_ERROR)

    async def _run_callback(
        self, query: Mapping[str, Any], correlation_id: str | None
    ) -> CallbackOutcome:
        params = CallbackParams.from_query(query)

        if params.error:
            _LOG.warning(
                "Provider reported OAuth error=%s (correlation_id=%s)",
                params.error,
                correlation_id,
            )
            raise CallbackError(RedirectReason.OAUTH_FAILED)
        if not params.code:
            raise CallbackError(RedirectReason.MISSING_CODE)
        if not params.state:
            raise CallbackError(RedirectReason.INVALID_PARAMETERS, "state is required with code")

        payload = self.codec.verify(params.state)
        if payload is None:
            raise CallbackError(RedirectReason.INVALID_STATE)

        code = params.code
        log = get_connect_logger(
            base_logger_name="tink-connect.core.service",
            user_id=payload.user_id,
            code=code,
            correlation_id=correlation_id,
        )

        if await self.claims.is_claimed(code):
            log.info("Authorization code already processed or in flight")
            return CallbackOutcome.success(payload.user_id)

        if not await self.claims.try_claim(code):
            log.info("Authorization code claimed by another request")
            return CallbackOutcome.success(payload.user_id)

        try:
            token = await self.provider.user_access_token_flow(
                payload.user_id, scope=self.data_scope
            )
        except ProviderError as exc:
            await self.claims.release(code)
            log.error(
                "Token exchange failed (%s, status=%s)", type(exc).__name__, exc.status_code
            )
            raise CallbackError(RedirectReason.SYNC_FAILED) from exc
        except Exception as exc:
            await self.claims.release(code)
            log.exception("Token exchange raised unexpectedly")
            raise CallbackError(RedirectReason.SYNC_FAILED) from exc

        self.background.spawn(
            self._sync_downstream(payload, token, params.credentials_id),
            name=f"account-sync-{payload.user_id[:8]}",
        )

        await self.claims.complete(code)
        log.info("Bank connection completed")
        return CallbackOutcome.success(payload.user_id)

    # ------------------------------------------------------------------ #
    # Downstream sync                                                    #
    # ------------------------------------------------------------------ #
    async def _is_consent_refresh(self, user_id: str, credentials_id: str | None) -> bool:
        if not credentials_id:
            return False
        probe = getattr(self.syncer, "has_credentials", None)
        if probe is None:
            return False
        return bool(await probe(self.db, user_id, credentials_id))

    async def _sync_downstream(
        self, payload: StatePayload, token: TokenResponse, credentials_id: str | None
    ) -> None:
        is_refresh = await self._is_consent_refresh(payload.user_id, credentials_id)
        options = {
            "is_consent_refresh": is_refresh,
            "previous_credentials_id": credentials_id,
            "skip_duplicate_check": False,
        }
        result = await self.syncer.sync_accounts_and_balances(
            self.db,
            payload.user_id,
            token.access_token,
            token.scope,
            token.expires_in,
            credentials_id,
            options,
        )
        _LOG.info(
            "Accounts synced for user_id=%s**** (count=%d, consent_refresh=%s)",
            payload.user_id[:6],
            result.count,
            is_refresh,
        )
