from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

if TYPE_CHECKING:
    from starlette.requests import Request

    from tink_connect.core.claims import ClaimStore
    from tink_connect.core.service import ConnectService
    from tink_connect.utils.environment import Settings

Authenticator = Callable[["Request"], Awaitable["str | None"]]
WebhookHandler = Callable[[Mapping[str, Any]], Awaitable[None]]


@dataclass(frozen=True)
class AppContext:
    """
    Fully wired dependencies shared by every request.
    Built once by the application lifespan (or injected by tests) and stored
    on ``app.state.context``.
    """

    settings: Settings
    service: ConnectService
    claims: ClaimStore
    authenticator: Authenticator
    webhook_handler: WebhookHandler
