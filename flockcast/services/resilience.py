from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, TypeVar

from redis.asyncio import Redis

from flockcast.core.config import get_settings
from flockcast.core.errors import IntegrationUnavailableError
from flockcast.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for breaker and cache coordination.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


async def bounded(func: Callable[[], Awaitable[T]], *, timeout_s: float) -> T:
    # Single place that turns "may hang" into "raises TimeoutError".
    return await asyncio.wait_for(func(), timeout=max(timeout_s, 0.0))


@dataclass(frozen=True)
class RaceOutcome(Generic[T]):
    value: T
    source: Literal["primary", "fallback"]
    # Why the primary path was abandoned, when it was.
    primary_error: BaseException | None = None


async def race_with_fallback(
    primary: Callable[[], Awaitable[Any]],
    fallback: Callable[[], Awaitable[T]],
    *,
    timeout_s: float,
    fallback_timeout_s: float | None = None,
    accept: Callable[[Any], bool] | None = None,
    label: str = "read",
) -> RaceOutcome[T]:
    """Race ``primary`` against ``timeout_s`` and fall back on miss, error or timeout.

    ``accept`` decides whether a primary value counts as a hit (default: not None).
    Primary failures are absorbed and reported on the outcome; the fallback is bounded
    by ``fallback_timeout_s`` and its errors, including ``TimeoutError``, propagate.
    """
    accept = accept or (lambda value: value is not None)
    primary_error: BaseException | None = None
    try:
        value = await bounded(primary, timeout_s=timeout_s)
    except Exception as exc:  # noqa: BLE001 - degraded primaries fall back
        primary_error = exc
        increment_counter(f"race_primary_failed_total.{label}")
        logger.warning("race_primary_failed label=%s error=%s", label, type(exc).__name__)
    else:
        if accept(value):
            return RaceOutcome(value=value, source="primary")
    if fallback_timeout_s is None:
        result = await fallback()
    else:
        result = await bounded(fallback, timeout_s=fallback_timeout_s)
    return RaceOutcome(value=result, source="fallback", primary_error=primary_error)


def backoff_delay_s(attempt: int, *, base_ms: int, max_ms: int, jitter: bool = True) -> float:
    # Exponential backoff keyed on the zero-indexed attempt that just failed.
    delay_ms = min(base_ms * (2 ** max(attempt, 0)), max_ms)
    if jitter:
        delay_ms *= random.uniform(0.5, 1.0)
    return max(delay_ms, 0) / 1000.0


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def for_providers(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            timeout_ms=settings.provider_call_timeout_ms,
            max_attempts=settings.provider_retry_max_attempts,
            backoff_ms=settings.provider_retry_backoff_ms,
        )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    label: str = "provider_call",
) -> Any:
    """Retry one outbound call in place while its failures look transient.

    Each try is bounded by ``policy.timeout_ms``. Redelivering a whole job is the
    delivery queue's business, not this helper's.
    """
    policy = policy or RetryPolicy.for_providers()
    retryable = retryable or _is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(attempts):
        try:
            return await bounded(func, timeout_s=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-transient failures re-raise below
            if attempt + 1 >= attempts or not retryable(exc):
                raise
            increment_counter(f"{label}_retries_total")
            await asyncio.sleep(
                backoff_delay_s(attempt, base_ms=policy.backoff_ms, max_ms=policy.backoff_ms * 2**attempts)
            )


BreakerPhase = Literal["closed", "open", "half_open"]
_PHASE_GAUGE: dict[str, float] = {"closed": 0.0, "half_open": 0.5, "open": 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class BreakerSnapshot:
    phase: BreakerPhase = "closed"
    failures: int = 0
    opened_at: float | None = None
    # Trial calls admitted since the breaker went half-open.
    trials: int = 0

    @classmethod
    def from_hash(cls, raw: dict[str, str]) -> "BreakerSnapshot":
        opened_at = raw.get("opened_at")
        return cls(
            phase=raw.get("state", "closed"),  # type: ignore[arg-type]
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("half_open_trials") or 0),
        )

    def to_hash(self) -> dict[str, str]:
        return {
            "state": self.phase,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else str(self.opened_at),
            "half_open_trials": str(self.trials),
        }


def _breaker_key(name: str) -> str:
    return f"{get_settings().cb_redis_prefix}:{name}"


class CircuitBreaker:
    """Per-integration breaker, shared across worker processes through a Redis hash.

    Without Redis the snapshot lives on the instance, which is what tests and
    single-process dev runs use.
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
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        # Wall clock, since opened_at is compared across processes.
        self._now = time_source or time.time
        self._snapshot = BreakerSnapshot()

    @property
    def name(self) -> str:
        return self._name

    async def _read(self) -> BreakerSnapshot:
        if self._redis is None:
            return self._snapshot
        raw = await self._redis.hgetall(_breaker_key(self._name))
        return BreakerSnapshot.from_hash(raw) if raw else self._snapshot

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._snapshot = snapshot
        if self._redis is None:
            return
        key = _breaker_key(self._name)
        await self._redis.hset(key, mapping=snapshot.to_hash())
        await self._redis.expire(key, max(self._config.open_seconds * 4, 60))

    def _enter(self, current: BreakerSnapshot, phase: BreakerPhase) -> BreakerSnapshot:
        if current.phase != phase:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, current.phase, phase)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{phase}")
            set_gauge(f"circuit_breaker_state.{self._name}", _PHASE_GAUGE[phase])
        return BreakerSnapshot(phase=phase, opened_at=self._now() if phase == "open" else None)

    def _unavailable(self) -> IntegrationUnavailableError:
        return IntegrationUnavailableError(f"{self._name} is temporarily unavailable")

    async def before_call(self) -> BreakerSnapshot:
        """Admit or refuse a call; raises ``IntegrationUnavailableError`` while open."""
        snapshot = await self._read()
        if snapshot.phase == "open":
            cooled = snapshot.opened_at is not None and self._now() - snapshot.opened_at >= self._config.open_seconds
            if not cooled:
                raise self._unavailable()
            snapshot = self._enter(snapshot, "half_open")
        if snapshot.phase == "half_open":
            if snapshot.trials >= self._config.half_open_trials:
                raise self._unavailable()
            snapshot.trials += 1
            await self._write(snapshot)
        return snapshot

    async def record_success(self) -> None:
        snapshot = await self._read()
        await self._write(self._enter(snapshot, "closed"))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        # A failed half-open trial reopens immediately.
        if snapshot.phase == "half_open" or snapshot.failures + 1 >= self._config.failure_threshold:
            await self._write(self._enter(snapshot, "open"))
            return
        snapshot.failures += 1
        await self._write(snapshot)


async def get_circuit_breaker_state(name: str) -> str:
    # Reported by /ops/queue; "unknown" when Redis cannot be read.
    redis = await get_resilience_redis()
    if redis is None:
        return "unknown"
    try:
        raw = await redis.hgetall(_breaker_key(name))
    except Exception:  # noqa: BLE001 - ops endpoints report degraded Redis
        return "unknown"
    return BreakerSnapshot.from_hash(raw).phase if raw else "closed"
