"""Idempotent claim store for single-use authorization codes.

This module introduces a *narrow* claim interface (:class:`ClaimStore`) and
two implementations:

* :class:`RedisClaimStore` – shared across every server instance; the claim is
  one server-side Lua script so ``check processed`` and ``set processing`` can
  never interleave with another caller.
* :class:`MemoryClaimStore` – single-process store built on
  :class:`cachetools.TTLCache`, used for local development and tests.

Two facts are kept per code:

``processing:<code>``
    Transient ownership marker, expires after ``processing_ttl`` (10 min) so a
    crashed owner cannot lock the code forever.
``processed:<code>``
    Terminal marker, expires after ``processed_ttl`` (2 h, four times the
    provider's 30-minute code lifetime).  Replays later than that are assumed
    impossible because the upstream code itself has expired.

Codes are stored as SHA-256 digests so the store never holds a usable
credential.

Degraded mode
-------------
When Redis is unreachable ``try_claim`` **fails open** (returns ``True``) and
logs a warning; ``is_claimed`` reports ``False``; ``complete`` and ``release``
log and return.  Availability wins over the narrow, time-boxed replay window
during an outage.
"""

from __future__ import annotations

import asyncio
import logging
import math
from hashlib import sha256
from typing import Final, Protocol, runtime_checkable

from cachetools import TTLCache
from redis.asyncio import Redis
from redis.exceptions import RedisError

from tink_connect.core.clock import Clock, default_clock, to_millis
from tink_connect.core.log_utils import mask_code
from tink_connect.core.models import ClaimStats

_LOG = logging.getLogger("tink-connect.core.claims")

PROCESSING_TTL_SECONDS: Final[int] = 10 * 60
PROCESSED_TTL_SECONDS: Final[int] = 2 * 60 * 60
DEFAULT_KEY_PREFIX: Final[str] = "tink:oauth:"

# KEYS[1] processed key, KEYS[2] processing key; ARGV[1] now ms, ARGV[2] ttl ms
_TRY_CLAIM_LUA: Final[str] = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
if redis.call('SET', KEYS[2], ARGV[1], 'NX', 'PX', ARGV[2]) then
  return 1
end
return 0
"""

# Deletes KEYS[1] only while it still holds ARGV[1]
_DELETE_IF_EQUAL_LUA: Final[str] = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

_STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def _hash(code: str) -> str:
    return sha256(code.encode("utf-8")).hexdigest()


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class ClaimStore(Protocol):
    """Minimal contract for at-most-once processing of authorization codes."""

    async def is_claimed(self, code: str) -> bool: ...
    async def try_claim(self, code: str) -> bool: ...
    async def complete(self, code: str) -> None: ...
    async def release(self, code: str) -> None: ...

    # ----- maintenance ----------------------------------------------------- #
    async def cleanup_stale(self) -> int: ...
    async def ping(self) -> bool: ...
    async def stats(self) -> ClaimStats: ...


# --------------------------------------------------------------------------- #
# Redis implementation                                                        #
# --------------------------------------------------------------------------- #


class RedisClaimStore:
    """Redis-backed :class:`ClaimStore` shared by every server instance."""

    def __init__(
        self,
        redis: Redis,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Clock = default_clock,
        processing_ttl: int = PROCESSING_TTL_SECONDS,
        processed_ttl: int = PROCESSED_TTL_SECONDS,
    ) -> None:
        self._redis = redis
        self._prefix = key_prefix
        self._clock = clock
        self.processing_ttl = processing_ttl
        self.processed_ttl = processed_ttl
        self._try_claim_script = redis.register_script(_TRY_CLAIM_LUA)
        self._delete_if_equal_script = redis.register_script(_DELETE_IF_EQUAL_LUA)

    # ---------------- key helpers ---------------------------------------- #
    def _processing_key(self, code: str) -> str:
        return f"{self._prefix}processing:{_hash(code)}"

    def _processed_key(self, code: str) -> str:
        return f"{self._prefix}processed:{_hash(code)}"

    # ---------------- claim operations ----------------------------------- #
    async def is_claimed(self, code: str) -> bool:
        try:
            found = await self._redis.exists(
                self._processed_key(code), self._processing_key(code)
            )
        except _STORE_ERRORS as exc:
            _LOG.warning(
                "Claim store unavailable for is_claimed code=%s, treating as unclaimed: %s",
                mask_code(code),
                exc,
            )
            return False
        return int(found) > 0

    async def try_claim(self, code: str) -> bool:
        try:
            granted = await self._try_claim_script(
                keys=[self._processed_key(code), self._processing_key(code)],
                args=[to_millis(self._clock), self.processing_ttl * 1000],
            )
        except _STORE_ERRORS as exc:
            _LOG.warning(
                "Claim store unavailable, FAIL-OPEN claim granted for code=%s: %s",
                mask_code(code),
                exc,
            )
            return True
        if int(granted or 0) == 1:
            _LOG.info("Claim granted for code=%s", mask_code(code))
            return True
        _LOG.info("Claim denied for code=%s (processed or in flight)", mask_code(code))
        return False

    async def complete(self, code: str) -> None:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(
                    self._processed_key(code),
                    to_millis(self._clock),
                    px=self.processed_ttl * 1000,
                )
                pipe.delete(self._processing_key(code))
                await pipe.execute()
        except _STORE_ERRORS as exc:
            # processing TTL still bounds the stale claim
            _LOG.warning(
                "Claim store unavailable for complete code=%s: %s", mask_code(code), exc
            )
            return
        _LOG.debug("Claim completed for code=%s", mask_code(code))

    async def release(self, code: str) -> None:
        try:
            await self._redis.delete(self._processing_key(code))
        except _STORE_ERRORS as exc:
            _LOG.warning(
                "Claim store unavailable for release code=%s: %s", mask_code(code), exc
            )
            return
        _LOG.debug("Claim released for code=%s", mask_code(code))

    # ---------------- maintenance ---------------------------------------- #
    async def cleanup_stale(self) -> int:
        """Delete ``processing`` markers older than the processing TTL."""
        removed = 0
        now = to_millis(self._clock)
        max_age_ms = self.processing_ttl * 1000
        try:
            async for key in self._redis.scan_iter(
                match=f"{self._prefix}processing:*", count=100
            ):
                value = await self._redis.get(key)
                if value is None:
                    continue  # expired between SCAN and GET
                try:
                    started = int(value)
                except (TypeError, ValueError):
                    started = None
                if started is not None and now - started <= max_age_ms:
                    continue
                removed += int(
                    await self._delete_if_equal_script(keys=[key], args=[value]) or 0
                )
        except _STORE_ERRORS as exc:
            _LOG.warning("Claim store unavailable during cleanup: %s", exc)
            return removed
        if removed:
            _LOG.info("Cleaned up %d stale processing claims", removed)
        return removed

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except _STORE_ERRORS as exc:
            _LOG.warning("Claim store ping failed: %s", exc)
            return False

    async def stats(self) -> ClaimStats:
        count = 0
        try:
            async for _ in self._redis.scan_iter(
                match=f"{self._prefix}processing:*", count=100
            ):
                count += 1
        except _STORE_ERRORS as exc:
            _LOG.warning("Claim store unavailable for stats: %s", exc)
            return ClaimStats(reachable=False)
        return ClaimStats(reachable=True, processing=count)


# --------------------------------------------------------------------------- #
# In-process implementation                                                   #
# --------------------------------------------------------------------------- #


class MemoryClaimStore:
    """Single-process :class:`ClaimStore` on top of ``cachetools.TTLCache``.

    Every method body runs without awaiting, so on one event loop the
    check-and-set in :meth:`try_claim` is indivisible.  Not shared across
    processes; use :class:`RedisClaimStore` when running more than one
    instance.

    Both caches are unbounded: a live marker leaves only through its TTL or
    :meth:`release`, never through size-based eviction.
    """

    def __init__(
        self,
        *,
        clock: Clock = default_clock,
        processing_ttl: int = PROCESSING_TTL_SECONDS,
        processed_ttl: int = PROCESSED_TTL_SECONDS,
    ) -> None:
        self._clock = clock
        self.processing_ttl = processing_ttl
        self.processed_ttl = processed_ttl
        self._processing: TTLCache[str, int] = TTLCache(
            maxsize=math.inf, ttl=processing_ttl, timer=clock
        )
        self._processed: TTLCache[str, int] = TTLCache(
            maxsize=math.inf, ttl=processed_ttl, timer=clock
        )

    async def is_claimed(self, code: str) -> bool:
        key = _hash(code)
        return key in self._processed or key in self._processing

    async def try_claim(self, code: str) -> bool:
        key = _hash(code)
        if key in self._processed or key in self._processing:
            _LOG.info("Claim denied for code=%s (processed or in flight)", mask_code(code))
            return False
        self._processing[key] = to_millis(self._clock)
        _LOG.info("Claim granted for code=%s", mask_code(code))
        return True

    async def complete(self, code: str) -> None:
        key = _hash(code)
        self._processed[key] = to_millis(self._clock)
        self._processing.pop(key, None)

    async def release(self, code: str) -> None:
        self._processing.pop(_hash(code), None)

    async def cleanup_stale(self) -> int:
        expired = self._processing.expire()
        removed = len(list(expired)) if expired else 0
        if removed:
            _LOG.info("Cleaned up %d stale processing claims", removed)
        return removed

    async def ping(self) -> bool:
        return True

    async def stats(self) -> ClaimStats:
        self._processing.expire()
        return ClaimStats(reachable=True, processing=len(self._processing))


# --------------------------------------------------------------------------- #
# Periodic sweep                                                              #
# --------------------------------------------------------------------------- #


async def run_cleanup_loop(
    store: ClaimStore, *, interval_seconds: float, stop: asyncio.Event
) -> None:
    """Run :meth:`ClaimStore.cleanup_stale` every *interval_seconds* until *stop*."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
        if stop.is_set():
            break
        try:
            await store.cleanup_stale()
        except Exception:  # noqa: BLE001  # best effort; TTL already bounds staleness
            _LOG.exception("Stale claim sweep failed")
