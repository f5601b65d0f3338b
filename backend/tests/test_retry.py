import logging
from dataclasses import replace

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from snaptriage.services.content_store import ObjectNotFoundError, TransientStoreError, is_retryable_store_error
from snaptriage.services.retry import (
    RetryPolicy,
    analysis_policy,
    content_store_policy,
    http_retry_after,
    is_retryable_http_error,
    is_transient_db_error,
)


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _status_error(code: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://analysis.test/v1/chat/completions")
    response = httpx.Response(code, headers=headers or {}, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


@pytest.mark.anyio("asyncio")
async def test_transient_errors_are_retried_with_doubling_backoff() -> None:
    sleeps = _Sleeps()
    policy = replace(content_store_policy(is_retryable_store_error), sleep=sleeps)
    calls = {"n": 0}

    async def _flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientStoreError("slow down")
        return "ok"

    assert await policy.run(_flaky) == "ok"
    assert calls["n"] == 3
    assert sleeps.delays == [0.1, 0.2]


@pytest.mark.anyio("asyncio")
async def test_exhaustion_reraises_the_last_error(caplog: pytest.LogCaptureFixture) -> None:
    sleeps = _Sleeps()
    policy = replace(content_store_policy(is_retryable_store_error), sleep=sleeps)
    calls = {"n": 0}

    async def _always() -> None:
        calls["n"] += 1
        raise TransientStoreError(f"throttled #{calls['n']}")

    with caplog.at_level(logging.INFO):
        with pytest.raises(TransientStoreError, match="throttled #3"):
            await policy.run(_always, label="copy")
    assert calls["n"] == 3
    assert "retrying_operation" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_fatal_errors_are_not_retried() -> None:
    sleeps = _Sleeps()
    policy = replace(content_store_policy(is_retryable_store_error), sleep=sleeps)

    async def _missing() -> None:
        raise ObjectNotFoundError("inbox/a.jpg")

    with pytest.raises(ObjectNotFoundError):
        await policy.run(_missing)
    assert sleeps.delays == []


@pytest.mark.anyio("asyncio")
async def test_analysis_policy_honors_retry_after() -> None:
    sleeps = _Sleeps()
    policy = replace(analysis_policy(), sleep=sleeps)
    errors = [_status_error(429, {"Retry-After": "7"}), _status_error(503)]

    async def _call() -> str:
        if errors:
            raise errors.pop(0)
        return "done"

    assert await policy.run(_call) == "done"
    assert sleeps.delays == [7.0, 4.0]


@pytest.mark.anyio("asyncio")
async def test_total_wait_budget_stops_retries_early() -> None:
    sleeps = _Sleeps()
    policy = replace(analysis_policy(max_total_wait=5.0), sleep=sleeps)

    async def _call() -> None:
        raise _status_error(429, {"Retry-After": "10"})

    with pytest.raises(httpx.HTTPStatusError):
        await policy.run(_call)
    assert sleeps.delays == []


def test_backoff_is_capped_by_max_delay() -> None:
    policy = RetryPolicy(name="t", max_attempts=10, base_delay=2.0, max_delay=60.0, is_retryable=lambda _e: True)
    assert [policy.delay_for(n) for n in range(1, 7)] == [2.0, 4.0, 8.0, 16.0, 32.0, 60.0]


def test_http_classification() -> None:
    assert is_retryable_http_error(_status_error(429))
    assert is_retryable_http_error(_status_error(502))
    assert not is_retryable_http_error(_status_error(400))
    assert is_retryable_http_error(httpx.ConnectTimeout("timeout"))
    assert http_retry_after(_status_error(429, {"Retry-After": "3"})) == 3.0
    assert http_retry_after(_status_error(429)) is None
    assert http_retry_after(ValueError("x")) is None


def test_db_classification() -> None:
    assert is_transient_db_error(OperationalError("SELECT 1", {}, Exception("database is locked")))
    assert not is_transient_db_error(ValueError("nope"))
