"""Minimal Tink OAuth client used by the connect flow.

Only the calls the connect/callback flow needs are implemented:

* ``client_credentials`` token with ``authorization:grant`` scope,
* authorization grant (user-scoped code for data access),
* delegated authorization grant (code handed to Tink Link),
* authorization-code → user access token exchange,
* Tink Link URL assembly.

Every request goes through :class:`~tink_connect.core.retry.RetryingHttpClient`;
non-retryable error responses raise :class:`~tink_connect.core.errors.ProviderError`
carrying the status code.  Access tokens and client secrets are never logged.
"""

from __future__ import annotations

import logging
from typing import Any, Final, Mapping
from urllib.parse import urlencode

import httpx

from tink_connect.core.errors import ProviderError
from tink_connect.core.models import TokenResponse
from tink_connect.core.retry import RetryingHttpClient

_LOG = logging.getLogger("tink-connect.core.provider")

DEFAULT_API_URL: Final[str] = "https://api.tink.com"
DEFAULT_LINK_URL: Final[str] = "https://link.tink.com/1.0/transactions/connect-accounts"
GRANT_SCOPE: Final[str] = "authorization:grant"
DEFAULT_DATA_SCOPE: Final[str] = (
    "accounts:read,balances:read,transactions:read,provider-consents:read"
)
LINK_SCOPE: Final[str] = (
    "authorization:read,authorization:grant,credentials:refresh,credentials:read,"
    "credentials:write,providers:read,user:read"
)


class TinkClient:
    """Thin async wrapper over the Tink OAuth endpoints."""

    def __init__(
        self,
        http: RetryingHttpClient,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        api_url: str = DEFAULT_API_URL,
        link_url: str = DEFAULT_LINK_URL,
    ) -> None:
        self.http = http
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.api_url = api_url.rstrip("/")
        self.link_url = link_url

    # ------------------------------------------------------------------ #
    # HTTP plumbing                                                      #
    # ------------------------------------------------------------------ #
    async def _post_form(
        self,
        path: str,
        form: Mapping[str, str],
        *,
        context: str,
        bearer: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        request = self.http.client.build_request(
            "POST", f"{self.api_url}{path}", data=dict(form), headers=headers
        )
        response = await self.http.send(request, context=context)
        if response.is_error:
            raise ProviderError(
                f"{context} returned {response.status_code}",
                context=context,
                status_code=response.status_code,
                body=response.text,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{context} returned invalid JSON", context=context, status_code=response.status_code
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(f"{context} returned unexpected payload", context=context)
        return data

    @staticmethod
    def _code_from(data: Mapping[str, Any], context: str) -> str:
        code = data.get("code")
        if not code:
            raise ProviderError(f"{context} response missing code", context=context)
        return str(code)

    # ------------------------------------------------------------------ #
    # OAuth calls                                                        #
    # ------------------------------------------------------------------ #
    async def get_client_token(self, scope: str = GRANT_SCOPE) -> TokenResponse:
        """Obtain a client-credentials token."""
        data = await self._post_form(
            "/api/v1/oauth/token",
            {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "scope": scope,
            },
            context="Tink client token",
        )
        try:
            return TokenResponse.from_json(data)
        except ValueError as exc:
            raise ProviderError(str(exc), context="Tink client token") from exc

    async def create_authorization_grant(
        self, client_token: str, *, user_id: str, scope: str = DEFAULT_DATA_SCOPE
    ) -> str:
        """Return a user-scoped authorization code for data access."""
        if not user_id:
            raise ValueError("user_id is required")
        context = "Tink authorization grant"
        data = await self._post_form(
            "/api/v1/oauth/authorization-grant",
            {"external_user_id": user_id, "scope": scope},
            context=context,
            bearer=client_token,
        )
        return self._code_from(data, context)

    async def create_delegated_grant(
        self,
        client_token: str,
        *,
        user_id: str,
        id_hint: str,
        scope: str = LINK_SCOPE,
    ) -> str:
        """Return an authorization code delegated to Tink Link for *user_id*."""
        if not user_id:
            raise ValueError("user_id is required")
        if not id_hint:
            raise ValueError("id_hint is required")
        context = "Tink delegated grant"
        data = await self._post_form(
            "/api/v1/oauth/authorization-grant/delegate",
            {
                "external_user_id": user_id,
                "id_hint": id_hint,
                "actor_client_id": self.client_id,
                "scope": scope,
            },
            context=context,
            bearer=client_token,
        )
        return self._code_from(data, context)

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange an authorization code for a user access token."""
        context = "Tink code exchange"
        data = await self._post_form(
            "/api/v1/oauth/token",
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self._client_secret,
            },
            context=context,
        )
        try:
            token = TokenResponse.from_json(data)
        except ValueError as exc:
            raise ProviderError(str(exc), context=context) from exc
        _LOG.info(
            "Exchanged authorization code (token_type=%s, expires in %ss, scope=%s)",
            token.token_type,
            token.expires_in,
            token.scope,
        )
        return token

    async def user_access_token_flow(
        self, user_id: str, *, scope: str = DEFAULT_DATA_SCOPE
    ) -> TokenResponse:
        """Client token → user authorization grant → user access token."""
        client_token = await self.get_client_token()
        code = await self.create_authorization_grant(
            client_token.access_token, user_id=user_id, scope=scope
        )
        return await self.exchange_code(code)

    # ------------------------------------------------------------------ #
    # Tink Link                                                          #
    # ------------------------------------------------------------------ #
    def build_link_url(
        self,
        authorization_code: str,
        *,
        market: str = "FR",
        locale: str = "en_US",
        state: str | None = None,
        redirect_uri: str | None = None,
    ) -> str:
        """Return the Tink Link URL that starts the bank connection."""
        params: dict[str, str] = {
            "client_id": self.client_id,
            "authorization_code": authorization_code,
            "redirect_uri": redirect_uri or self.redirect_uri,
            "market": market,
            "locale": locale,
        }
        if state:
            params["state"] = state
        return f"{self.link_url}?{urlencode(params)}"


def build_http_client(timeout_seconds: float = 10.0) -> httpx.AsyncClient:
    """Return the shared ``httpx.AsyncClient`` used for provider calls."""
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
