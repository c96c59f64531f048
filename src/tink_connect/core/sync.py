"""Downstream account/transaction sync hand-off.

The actual sync lives outside this package; :class:`AccountSyncer` is the
interface the callback flow calls.  Sync runs *after* the redirect has been
decided, in a detached task with its own error boundary: failures are logged
and never reach the user or the claim store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Mapping, Protocol, runtime_checkable

from tink_connect.core.models import SyncResult

_LOG = logging.getLogger("tink-connect.core.sync")


@runtime_checkable
class AccountSyncer(Protocol):
    """Collaborator that pulls accounts and balances for a freshly connected user."""

    async def sync_accounts_and_balances(
        self,
        db: Any,
        user_id: str,
        access_token: str,
        scope: str,
        expires_in: int,
        credentials_id: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> SyncResult: ...


class LoggingAccountSyncer:
    """Placeholder syncer that only records the hand-off."""

    async def sync_accounts_and_balances(
        self,
        db: Any,
        user_id: str,
        access_token: str,
        scope: str,
        expires_in: int,
        credentials_id: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> SyncResult:
        _LOG.info(
            "No account syncer configured; skipping sync for user_id=%s**** scope=%s",
            user_id[:6],
            scope,
        )
        return SyncResult()


class BackgroundSyncRunner:
    """Spawn and track detached sync tasks.

    Task references are kept until completion so they are not garbage
    collected mid-flight; :meth:`drain` waits for outstanding work on shutdown.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, work: Awaitable[Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(self._guard(work, name))
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(work: Awaitable[Any], name: str) -> Any:
        try:
            return await work
        except asyncio.CancelledError:
            _LOG.warning("Background task %s cancelled", name)
            raise
        except Exception:  # noqa: BLE001  # error boundary: never surfaced to the request
            _LOG.exception("Background task %s failed", name)
            return None

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after *timeout*."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        _LOG.debug("Drained %d background tasks (%d cancelled)", len(done), len(pending))
