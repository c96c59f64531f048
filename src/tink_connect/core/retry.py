"""Retry-with-backoff wrapper around :class:`httpx.AsyncClient`.

Transient failures (transport errors, timeouts, 5xx and the configured
retryable statuses such as 408/429) are retried with exponential backoff and
up to 10% jitter so concurrent callers do not retry in lock-step.  Any other
response, success or client error, is returned to the caller on the first
attempt.

When every attempt fails :class:`~tink_connect.core.errors.RetryExhaustedError`
is raised carrying the attempt count and the last underlying error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from tink_connect.core.errors import RetryExhaustedError

_LOG = logging.getLogger("tink-connect.core.retry")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff policy; delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable_statuses: tuple[int, ...] = (408, 429, 500, 502, 503, 504)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")

    def is_retryable(self, status_code: int) -> bool:
        return status_code >= 500 or status_code in self.retryable_statuses


class _RetryableStatus(Exception):
    """Internal marker for a response that should be retried."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}: {response.text[:200]}")
        self.status_code = response.status_code


class RetryingHttpClient:
    """Send requests through an ``httpx.AsyncClient`` with bounded retries."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: RetryConfig | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.client = client
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int) -> float:
        """Delay before retrying after 0-based *attempt*."""
        exponential = self.config.base_delay * (2**attempt)
        jitter = self._rng() * 0.1 * exponential
        return min(exponential + jitter, self.config.max_delay)

    async def send(self, request: httpx.Request, *, context: str = "HTTP request") -> httpx.Response:
        """Send *request*, retrying transient failures.

        Raises
        ------
        RetryExhaustedError
            After ``max_retries + 1`` failed attempts.
        """
        attempts = self.config.max_retries + 1
        last_error: BaseException
        last_status: int | None
        attempt = 0

        while True:
            try:
                response = await self.client.send(request)
            except httpx.TransportError as exc:
                last_error = exc
                last_status = None
                _LOG.warning(
                    "%s: network error on attempt %d/%d: %s",
                    context,
                    attempt + 1,
                    attempts,
                    exc,
                )
            else:
                if not self.config.is_retryable(response.status_code):
                    if attempt > 0:
                        _LOG.info("%s: succeeded after %d attempts", context, attempt + 1)
                    return response
                await response.aread()
                last_error = _RetryableStatus(response)
                last_status = response.status_code
                await response.aclose()
                _LOG.warning(
                    "%s: retryable status %d on attempt %d/%d",
                    context,
                    response.status_code,
                    attempt + 1,
                    attempts,
                )

            if attempt + 1 >= attempts:
                raise RetryExhaustedError(
                    context=context,
                    attempts=attempts,
                    last_error=last_error,
                    status_code=last_status,
                )
            delay = self.compute_delay(attempt)
            _LOG.debug("%s: waiting %.0fms before retry", context, delay * 1000)
            await self._sleep(delay)
            attempt += 1
