"""Cache-aside reads over Redis.

Every failure mode of the cache backend (not configured, erroring, slow, corrupt
payloads) degrades to calling the authoritative source. Write-backs run as background
tasks and never reach the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine

from flockcast.core.config import get_settings
from flockcast.core.errors import CacheUnavailable
from flockcast.services import cache_keys
from flockcast.services.resilience import bounded, get_resilience_redis, race_with_fallback
from flockcast.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_MISS = object()


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> int:
        total = self.hits + self.misses
        return 0 if total == 0 else round((self.hits / total) * 100)

    def as_dict(self) -> dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "errors": self.errors, "hit_rate": self.hit_rate}


class CacheAside:
    def __init__(
        self,
        *,
        redis: Any | None = None,
        redis_factory: Callable[[], Awaitable[Any | None]] | None = None,
        prefix: str | None = None,
        read_timeout_s: float | None = None,
        compute_timeout_s: float | None = None,
        ttl_jitter_s: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._redis_factory = redis_factory if redis is None else None
        self._prefix = settings.cache_prefix if prefix is None else prefix
        self._read_timeout_s = (
            settings.cache_read_timeout_ms / 1000.0 if read_timeout_s is None else read_timeout_s
        )
        self._compute_timeout_s = (
            settings.cache_compute_timeout_ms / 1000.0 if compute_timeout_s is None else compute_timeout_s
        )
        self._ttl_jitter_s = settings.cache_ttl_jitter_s if ttl_jitter_s is None else ttl_jitter_s
        self._enabled = settings.cache_enabled if enabled is None else enabled
        self._pending: set[asyncio.Task[None]] = set()
        self.metrics = CacheMetrics()

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    async def _client(self) -> Any:
        if self._redis is not None:
            return self._redis
        if self._redis_factory is not None:
            client = await self._redis_factory()
            if client is not None:
                return client
        raise CacheUnavailable("cache backend is not configured")

    def _jittered_ttl(self, ttl: int) -> int:
        spread = min(self._ttl_jitter_s, ttl // 4)
        if spread <= 0:
            return max(ttl, 1)
        return max(ttl + random.randint(-spread, spread), 1)

    def _schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        # Keep task references so background writes are not garbage collected mid-flight.
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _read(self, full_key: str) -> Any:
        client = await self._client()
        try:
            raw = await client.get(full_key)
        except Exception as exc:  # noqa: BLE001 - any backend error means "unknown"
            raise CacheUnavailable(f"cache read failed: {exc}") from exc
        if raw is None:
            return _MISS
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("cache_corrupt_entry key=%s", full_key)
            self._schedule(self._delete_quietly(full_key))
            return _MISS
        return _MISS if value is None else value

    async def _write_back(self, full_key: str, value: Any, ttl: int) -> None:
        try:
            payload = json.dumps(value, default=str)
            client = await self._client()

            async def _set() -> None:
                await client.setex(full_key, self._jittered_ttl(ttl), payload)

            await bounded(_set, timeout_s=self._read_timeout_s)
        except CacheUnavailable:
            logger.debug("cache_write_skipped key=%s", full_key)
        except Exception as exc:  # noqa: BLE001 - write-back failures never reach callers
            self.metrics.errors += 1
            increment_counter("cache_write_failed_total")
            logger.warning("cache_write_failed key=%s error=%s", full_key, exc)

    async def _delete_quietly(self, full_key: str) -> None:
        try:
            client = await self._client()
            await bounded(lambda: client.delete(full_key), timeout_s=self._read_timeout_s)
        except Exception as exc:  # noqa: BLE001 - invalidation failures only delay freshness
            logger.warning("cache_delete_failed key=%s error=%s", full_key, exc)

    async def get_or_compute(
        self,
        key: str,
        ttl: int,
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Return the cached value for ``key`` or the result of ``compute``.

        ``compute`` is the source of truth. It runs on a miss, on any cache error and
        when the cache read exceeds the read timeout; its own timeout raises
        ``TimeoutError`` rather than hanging.
        """
        if not self._enabled or (self._redis is None and self._redis_factory is None):
            return await bounded(compute, timeout_s=self._compute_timeout_s)
        full_key = self._key(key)
        outcome = await race_with_fallback(
            lambda: self._read(full_key),
            compute,
            timeout_s=self._read_timeout_s,
            fallback_timeout_s=self._compute_timeout_s,
            accept=lambda value: value is not _MISS,
            label="cache",
        )
        if outcome.source == "primary":
            self.metrics.hits += 1
            increment_counter("cache_hits_total")
            return outcome.value
        self.metrics.misses += 1
        increment_counter("cache_misses_total")
        if outcome.primary_error is not None:
            self.metrics.errors += 1
            increment_counter("cache_errors_total")
        # None stays uncached so an absent source row reads as unknown, not as a hit.
        if outcome.value is not None:
            self._schedule(self._write_back(full_key, outcome.value, ttl))
        return outcome.value

    async def invalidate(self, key: str) -> bool:
        full_key = self._key(key)
        try:
            client = await self._client()
            await bounded(lambda: client.delete(full_key), timeout_s=self._read_timeout_s)
        except Exception as exc:  # noqa: BLE001 - stale entries expire by TTL
            logger.warning("cache_invalidate_failed key=%s error=%s", full_key, exc)
            return False
        return True

    async def invalidate_tenant(self, tenant_id: str) -> int:
        # SCAN instead of KEYS so large keyspaces never block Redis.
        pattern = self._key(cache_keys.tenant_all(tenant_id))
        removed = 0
        try:
            client = await self._client()
            batch: list[str] = []
            async for found in client.scan_iter(match=pattern, count=500):
                batch.append(found)
                if len(batch) >= 500:
                    removed += int(await client.delete(*batch))
                    batch = []
            if batch:
                removed += int(await client.delete(*batch))
        except Exception as exc:  # noqa: BLE001 - stale entries expire by TTL
            logger.warning("cache_invalidate_tenant_failed tenant_id=%s error=%s", tenant_id, exc)
        return removed

    async def flush_pending_writes(self) -> None:
        # Await background write-backs; used at shutdown and by tests.
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def cache_stats(self) -> dict[str, Any]:
        connected = False
        if self._enabled:
            try:
                client = await self._client()
                connected = bool(await bounded(client.ping, timeout_s=self._read_timeout_s))
            except Exception:  # noqa: BLE001 - ops view reports degraded Redis
                connected = False
        return {"enabled": self._enabled, "connected": connected, **self.metrics.as_dict()}


_cache: CacheAside | None = None


def get_cache() -> CacheAside:
    # Process-wide cache bound to the shared resilience Redis connection.
    global _cache
    if _cache is None:
        _cache = CacheAside(redis_factory=get_resilience_redis)
    return _cache


def reset_cache() -> None:
    global _cache
    _cache = None
