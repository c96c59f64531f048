"""Unit tests for the retrying HTTP client (no network: httpx.MockTransport)."""

from __future__ import annotations

import httpx
import pytest

from tink_connect.core.errors import RetryExhaustedError
from tink_connect.core.retry import RetryConfig, RetryingHttpClient

URL = "https://api.tink.test/api/v1/oauth/token"


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _client(handler, *, rng=lambda: 0.0, config=None):
    sleep = _RecordingSleep()
    http = RetryingHttpClient(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        config,
        sleep=sleep,
        rng=rng,
    )
    return http, sleep


def _scripted(statuses):
    """Handler answering with *statuses* in order and counting calls."""
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses[min(calls["n"], len(statuses) - 1)]
        calls["n"] += 1
        return httpx.Response(status, json={"status": status})

    return handler, calls


# --------------------------------------------------------------------------- #
# Backoff schedule                                                            #
# --------------------------------------------------------------------------- #
def test_delay_doubles_without_jitter() -> None:
    http, _ = _client(lambda r: httpx.Response(200))
    assert [http.compute_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]


def test_delays_are_non_decreasing_and_capped() -> None:
    http, _ = _client(lambda r: httpx.Response(200))
    delays = [http.compute_delay(n) for n in range(12)]
    assert delays == sorted(delays)
    assert max(delays) == 30.0


@pytest.mark.parametrize("rng_value", [0.0, 0.5, 0.999999])
def test_jitter_stays_within_ten_percent(rng_value: float) -> None:
    http, _ = _client(lambda r: httpx.Response(200), rng=lambda: rng_value)
    for attempt in range(4):
        base = 2.0**attempt
        delay = http.compute_delay(attempt)
        assert base <= delay <= base * 1.1


def test_jitter_never_exceeds_cap() -> None:
    http, _ = _client(lambda r: httpx.Response(200), rng=lambda: 0.999999)
    assert all(http.compute_delay(n) <= 30.0 for n in range(20))


@pytest.mark.parametrize(
    ("status", "expected"),
    [(408, True), (429, True), (500, True), (503, True), (507, True), (400, False), (404, False), (409, False)],
)
def test_retryable_statuses(status: int, expected: bool) -> None:
    assert RetryConfig().is_retryable(status) is expected


# --------------------------------------------------------------------------- #
# send()                                                                      #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_success_first_try_does_not_sleep() -> None:
    handler, calls = _scripted([200])
    http, sleep = _client(handler)
    response = await http.send(httpx.Request("POST", URL))
    assert response.status_code == 200
    assert calls["n"] == 1
    assert sleep.delays == []


@pytest.mark.anyio
async def test_three_unavailable_then_success() -> None:
    handler, calls = _scripted([503, 503, 503, 200])
    http, sleep = _client(handler)

    response = await http.send(httpx.Request("POST", URL), context="Token exchange")

    assert response.status_code == 200
    assert response.json() == {"status": 200}
    assert calls["n"] == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert sum(sleep.delays) == pytest.approx(7.0)


@pytest.mark.anyio
async def test_jittered_total_wait_bounded() -> None:
    handler, _ = _scripted([503, 503, 503, 200])
    http, sleep = _client(handler, rng=lambda: 0.999999)
    await http.send(httpx.Request("POST", URL))
    assert 7.0 <= sum(sleep.delays) <= 7.7


@pytest.mark.anyio
async def test_client_error_returned_without_retry() -> None:
    handler, calls = _scripted([409, 200])
    http, sleep = _client(handler)

    response = await http.send(httpx.Request("POST", URL))

    assert response.status_code == 409
    assert calls["n"] == 1
    assert sleep.delays == []


@pytest.mark.anyio
async def test_exhaustion_raises_with_attempt_count() -> None:
    handler, calls = _scripted([502])
    http, sleep = _client(handler)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await http.send(httpx.Request("POST", URL), context="Token exchange")

    err = exc_info.value
    assert err.attempts == 4
    assert err.status_code == 502
    assert err.context == "Token exchange"
    assert "failed after 4 attempts" in str(err)
    assert calls["n"] == 4
    # no sleep after the final attempt
    assert sleep.delays == [1.0, 2.0, 4.0]


@pytest.mark.anyio
async def test_transport_errors_are_retried() -> None:
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ok": True})

    http, sleep = _client(handler)
    response = await http.send(httpx.Request("GET", URL))

    assert response.status_code == 200
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.anyio
async def test_persistent_timeout_exhausts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    http, _ = _client(handler, config=RetryConfig(max_retries=1))
    with pytest.raises(RetryExhaustedError) as exc_info:
        await http.send(httpx.Request("GET", URL))

    assert exc_info.value.attempts == 2
    assert exc_info.value.status_code is None
    assert isinstance(exc_info.value.last_error, httpx.ReadTimeout)


@pytest.mark.parametrize(
    "kwargs",
    [{"max_retries": -1}, {"base_delay": -0.5}, {"max_delay": -1.0}],
)
def test_invalid_retry_config_rejected(kwargs) -> None:
    with pytest.raises(ValueError):
        RetryConfig(**kwargs)


@pytest.mark.anyio
async def test_zero_retries_makes_single_attempt() -> None:
    handler, calls = _scripted([503])
    http, sleep = _client(handler, config=RetryConfig(max_retries=0))

    with pytest.raises(RetryExhaustedError) as exc_info:
        await http.send(httpx.Request("GET", URL))

    assert calls["n"] == 1
    assert sleep.delays == []
    assert exc_info.value.attempts == 1
    assert exc_info.value.last_error is not None
