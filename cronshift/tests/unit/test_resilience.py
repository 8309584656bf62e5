from __future__ import annotations

import pytest

from cronshift.core.config import get_settings
from cronshift.core.errors import IntegrationUnavailableError
from cronshift.services import resilience
from cronshift.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    get_resilience_redis,
    retry_async,
)
from cronshift.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_raises_after_last_attempt() -> None:
    calls = {"count": 0}

    async def down() -> None:
        calls["count"] += 1
        raise TimeoutError("timeout")

    with pytest.raises(TimeoutError):
        await retry_async(down, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    def time_source() -> float:
        return now["t"]

    breaker = CircuitBreaker(
        "test.integration",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=time_source,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    assert await breaker.state() == "open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] = 11.0
    await breaker.before_call()
    assert await breaker.state() == "half_open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    assert await breaker.state() == "closed"
    await breaker.before_call()


@pytest.mark.asyncio
async def test_half_open_failure_reopens() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        "test.reopen",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()
    assert await breaker.state() == "open"


@pytest.mark.asyncio
async def test_breaker_state_shared_through_redis(monkeypatch) -> None:
    class StubRedis:
        def __init__(self) -> None:
            self.hashes: dict[str, dict[str, str]] = {}

        async def hgetall(self, key: str) -> dict[str, str]:
            return dict(self.hashes.get(key, {}))

        async def hset(self, key: str, mapping: dict[str, str]) -> None:
            self.hashes[key] = dict(mapping)

        async def expire(self, _key: str, _seconds: int) -> None:
            return None

    redis = StubRedis()
    config = CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1)
    first = CircuitBreaker("shared", redis=redis, config=config, time_source=lambda: 100.0)
    await first.record_failure()

    # A later run with a fresh breaker object sees the persisted open state.
    second = CircuitBreaker("shared", redis=redis, config=config, time_source=lambda: 110.0)
    with pytest.raises(IntegrationUnavailableError):
        await second.before_call()
    assert redis.hashes[f"{get_settings().cb_redis_prefix}:shared"]["state"] == "open"


@pytest.mark.asyncio
async def test_redis_disabled_without_url(settings, monkeypatch) -> None:
    monkeypatch.setattr(resilience, "_shared_redis", None)
    assert await get_resilience_redis() is None
