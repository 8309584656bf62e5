from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
import random
import time
from typing import Any, Awaitable, Callable, Protocol

from redis.asyncio import Redis

from cronshift.core.config import Settings, get_settings
from cronshift.core.errors import IntegrationUnavailableError
from cronshift.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"
_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}

_shared_redis: Redis | None = None
_shared_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    """Return the Redis client used for breaker state, or None when REDIS_URL is unset.

    One client per event loop: every CLI run owns a fresh loop via asyncio.run.
    """
    global _shared_redis, _shared_redis_loop
    url = get_settings().redis_url
    if not url:
        return None
    loop = asyncio.get_running_loop()
    if _shared_redis is None or _shared_redis_loop is not loop:
        try:
            _shared_redis = Redis.from_url(url, encoding="utf-8", decode_responses=True)
        except ValueError as exc:
            logger.warning("resilience_redis_unavailable", exc_info=exc)
            _shared_redis = None
            return None
        _shared_redis_loop = loop
    return _shared_redis


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_seconds(self, attempt: int) -> float:
        # Exponential in the attempt number, jittered by +/-50%.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    policy = policy or RetryPolicy.from_settings()
    should_retry = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = policy.delay_seconds(attempt)
            increment_counter("external_retries_total")
            logger.info("external_retry attempt=%s sleep_s=%.2f error=%s", attempt, delay, type(exc).__name__)
            await asyncio.sleep(delay)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CircuitBreakerConfig":
        settings = settings or get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class BreakerSnapshot:
    state: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0


class BreakerStore(Protocol):
    async def load(self, key: str) -> BreakerSnapshot | None: ...

    async def save(self, key: str, snapshot: BreakerSnapshot, ttl_seconds: int) -> None: ...


class RedisBreakerStore:
    # Hash per breaker so consecutive one-shot runs share state.

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def load(self, key: str) -> BreakerSnapshot | None:
        raw = await self._redis.hgetall(key)
        if not raw:
            return None
        opened_at = raw.get("opened_at")
        return BreakerSnapshot(
            state=raw.get("state", CLOSED),
            failures=int(raw.get("failures", 0)),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("half_open_trials", 0)),
        )

    async def save(self, key: str, snapshot: BreakerSnapshot, ttl_seconds: int) -> None:
        await self._redis.hset(
            key,
            mapping={
                "state": snapshot.state,
                "failures": str(snapshot.failures),
                "opened_at": "" if snapshot.opened_at is None else str(snapshot.opened_at),
                "half_open_trials": str(snapshot.trials),
            },
        )
        await self._redis.expire(key, ttl_seconds)


class CircuitBreaker:
    """Closed/open/half-open breaker around one external integration.

    Without Redis the state lives on the instance. With Redis it is read and
    written per call; a wall-clock ``time_source`` is then the default since
    monotonic clocks are not comparable across processes.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig.from_settings()
        self._store: BreakerStore | None = RedisBreakerStore(redis) if redis is not None else None
        self._now = time_source or (time.time if redis is not None else time.monotonic)
        self._snapshot = BreakerSnapshot()

    @property
    def name(self) -> str:
        return self._name

    @property
    def key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _read(self) -> BreakerSnapshot:
        if self._store is not None:
            stored = await self._store.load(self.key)
            if stored is not None:
                self._snapshot = stored
        return self._snapshot

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._snapshot = snapshot
        if self._store is not None:
            await self._store.save(self.key, snapshot, max(self._config.open_seconds * 4, 60))

    def _enter(self, current: BreakerSnapshot, target: str) -> BreakerSnapshot:
        if current.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        return BreakerSnapshot(state=target, opened_at=self._now() if target == OPEN else None)

    async def state(self) -> str:
        return (await self._read()).state

    async def before_call(self) -> None:
        """Admit a call or raise IntegrationUnavailableError.

        An open breaker moves to half-open once ``open_seconds`` have passed;
        half-open admits at most ``half_open_trials`` calls until an outcome is
        recorded.
        """
        snapshot = await self._read()
        if snapshot.state == OPEN:
            elapsed = self._now() - (snapshot.opened_at or 0.0)
            if snapshot.opened_at is None or elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            snapshot = self._enter(snapshot, HALF_OPEN)
        if snapshot.state == HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            await self._write(replace(snapshot, trials=snapshot.trials + 1))

    async def record_success(self) -> None:
        snapshot = await self._read()
        await self._write(self._enter(snapshot, CLOSED))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        if snapshot.state == HALF_OPEN:
            await self._write(self._enter(snapshot, OPEN))
            return
        failures = snapshot.failures + 1
        if failures >= self._config.failure_threshold:
            await self._write(self._enter(snapshot, OPEN))
        else:
            await self._write(replace(snapshot, failures=failures))
