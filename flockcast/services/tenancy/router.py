"""Per-tenant database handle cache.

The router hands out one live handle per tenant and owns its whole lifecycle:
``live`` handles serve callers, ``draining`` handles finish in-flight work and are
disposed, ``gone`` handles are no longer reachable. Acquire and evict for the same
tenant are serialized by a per-tenant lock; different tenants never contend.

An aggregate connection budget bounds the pools held open by cached handles. When
a new handle would exceed it, the least recently used idle handle of another tenant
is evicted first.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from flockcast.core.config import get_settings
from flockcast.core.errors import ConnectionBudgetExceeded, HandleAcquisitionError, RouterClosedError
from flockcast.domain.records import ConnectionDescriptor
from flockcast.domain.state import HandleState
from flockcast.persistence.db import engine_kwargs, pool_stats
from flockcast.services.resilience import bounded
from flockcast.services.tenancy.directory import TenantDirectory
from flockcast.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class TenantConnection(Protocol):
    def session(self) -> AsyncSession:
        ...

    async def dispose(self) -> None:
        ...


class HandleFactory(Protocol):
    @property
    def connection_cost(self) -> int:
        ...

    async def open_handle(self, descriptor: ConnectionDescriptor) -> TenantConnection:
        ...


class TenantDatabase:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    def session(self) -> AsyncSession:
        return self._sessionmaker()

    async def dispose(self) -> None:
        await self.engine.dispose()

    def pool_stats(self) -> dict[str, int | None]:
        return pool_stats(self.engine)


class SqlAlchemyHandleFactory:
    def __init__(
        self,
        *,
        pool_size: int | None = None,
        max_overflow: int | None = None,
        connect_timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._pool_size = settings.tenant_db_pool_size if pool_size is None else pool_size
        self._max_overflow = settings.tenant_db_max_overflow if max_overflow is None else max_overflow
        self._connect_timeout_s = (
            settings.tenant_connect_timeout_s if connect_timeout_s is None else connect_timeout_s
        )

    @property
    def connection_cost(self) -> int:
        return max(1, self._pool_size + self._max_overflow)

    async def open_handle(self, descriptor: ConnectionDescriptor) -> TenantDatabase:
        engine = create_async_engine(
            descriptor.url,
            **engine_kwargs(descriptor.url, pool_size=self._pool_size, max_overflow=self._max_overflow),
        )

        async def _verify() -> None:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            await bounded(_verify, timeout_s=self._connect_timeout_s)
        except Exception as exc:
            await engine.dispose()
            logger.warning(
                "tenant_handle_verify_failed tenant_id=%s url=%s error=%s",
                descriptor.tenant_id,
                descriptor.redacted_url(),
                type(exc).__name__,
            )
            raise HandleAcquisitionError(
                f"Tenant {descriptor.tenant_id} database is unreachable"
            ) from exc
        return TenantDatabase(engine)


class TenantHandle:
    def __init__(self, tenant_id: str, connection: TenantConnection, *, cost: int, now: float) -> None:
        self.tenant_id = tenant_id
        self.connection = connection
        self.cost = cost
        self.created_at = now
        self.last_used_at = now
        self.state: HandleState = "live"
        self.in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def is_live(self) -> bool:
        return self.state == "live"

    def session(self) -> AsyncSession:
        if self.state == "gone":
            raise HandleAcquisitionError(f"Handle for tenant {self.tenant_id} has been disposed")
        return self.connection.session()

    def begin_use(self, now: float) -> None:
        self.in_flight += 1
        self.last_used_at = now
        self._idle.clear()

    def end_use(self, now: float) -> None:
        self.in_flight = max(self.in_flight - 1, 0)
        self.last_used_at = now
        if self.in_flight == 0:
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()


class TenantRouter:
    def __init__(
        self,
        directory: TenantDirectory,
        factory: HandleFactory,
        *,
        max_total_connections: int | None = None,
        idle_timeout_s: float | None = None,
        drain_timeout_s: float | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._directory = directory
        self._factory = factory
        self._max_total_connections = (
            settings.tenant_max_total_connections if max_total_connections is None else max_total_connections
        )
        self._idle_timeout_s = settings.tenant_handle_idle_timeout_s if idle_timeout_s is None else idle_timeout_s
        self._drain_timeout_s = (
            settings.tenant_handle_drain_timeout_s if drain_timeout_s is None else drain_timeout_s
        )
        self._time = time_source or time.monotonic
        self._handles: dict[str, TenantHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Budget claimed by handles that are still being opened.
        self._reserved = 0
        self._closed = False

    @property
    def directory(self) -> TenantDirectory:
        return self._directory

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    def _connections_in_use(self) -> int:
        return sum(handle.cost for handle in self._handles.values()) + self._reserved

    def _cached_live(self, tenant_id: str) -> TenantHandle | None:
        handle = self._handles.get(tenant_id)
        if handle is not None and handle.is_live:
            handle.last_used_at = self._time()
            return handle
        return None

    async def acquire(self, tenant_id: str) -> TenantHandle:
        if self._closed:
            raise RouterClosedError("Tenant router is closed")
        handle = self._cached_live(tenant_id)
        if handle is not None:
            return handle
        async with self._lock_for(tenant_id):
            if self._closed:
                raise RouterClosedError("Tenant router is closed")
            # Another acquire may have opened the handle while this one waited.
            handle = self._cached_live(tenant_id)
            if handle is not None:
                return handle
            record = await self._directory.resolve(tenant_id)
            cost = self._factory.connection_cost
            await self._reserve(tenant_id, cost)
            try:
                connection = await self._factory.open_handle(record.connection_descriptor())
            finally:
                self._reserved -= cost
            if self._closed:
                # close() ran while the open was pending and never saw this handle.
                await self._discard(tenant_id, connection)
                raise RouterClosedError("Tenant router is closed")
            handle = TenantHandle(tenant_id, connection, cost=cost, now=self._time())
            self._handles[tenant_id] = handle
            increment_counter("tenant_handles_opened_total")
            set_gauge("tenant_connections_in_use", self._connections_in_use())
            logger.info("tenant_handle_opened tenant_id=%s cost=%s", tenant_id, cost)
            return handle

    async def _discard(self, tenant_id: str, connection: TenantConnection) -> None:
        try:
            await connection.dispose()
        except Exception as exc:  # noqa: BLE001 - the router is closing either way
            logger.warning("tenant_handle_dispose_failed tenant_id=%s error=%s", tenant_id, exc)
        logger.info("tenant_handle_discarded tenant_id=%s reason=router_closed", tenant_id)

    async def _reserve(self, tenant_id: str, cost: int) -> None:
        if cost > self._max_total_connections:
            raise ConnectionBudgetExceeded(
                f"Handle cost {cost} exceeds the connection budget {self._max_total_connections}"
            )
        while self._connections_in_use() + cost > self._max_total_connections:
            victim = self._pick_victim(exclude=tenant_id)
            if victim is None:
                increment_counter("tenant_budget_exhausted_total")
                raise ConnectionBudgetExceeded(
                    f"Connection budget {self._max_total_connections} exhausted; no idle handle to evict"
                )
            # The victim's lock is free, so this acquires without yielding to other tasks.
            async with self._lock_for(victim.tenant_id):
                if self._handles.get(victim.tenant_id) is victim:
                    await self._evict_locked(victim, reason="budget")
        # Claimed synchronously after the check so concurrent opens cannot overshoot.
        self._reserved += cost

    def _pick_victim(self, *, exclude: str) -> TenantHandle | None:
        candidates = [
            handle
            for handle in self._handles.values()
            if handle.tenant_id != exclude
            and handle.is_live
            and handle.in_flight == 0
            and not self._lock_for(handle.tenant_id).locked()
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda handle: handle.last_used_at)

    async def _evict_locked(self, handle: TenantHandle, *, reason: str) -> None:
        # Caller holds the tenant lock. Draining handles are invisible to acquire.
        handle.state = "draining"
        if handle.in_flight:
            try:
                await asyncio.wait_for(handle.wait_idle(), timeout=self._drain_timeout_s)
            except TimeoutError:
                logger.warning(
                    "tenant_handle_drain_timeout tenant_id=%s in_flight=%s",
                    handle.tenant_id,
                    handle.in_flight,
                )
        try:
            await handle.connection.dispose()
        except Exception as exc:  # noqa: BLE001 - a failed dispose still retires the handle
            logger.warning("tenant_handle_dispose_failed tenant_id=%s error=%s", handle.tenant_id, exc)
        finally:
            handle.state = "gone"
            if self._handles.get(handle.tenant_id) is handle:
                del self._handles[handle.tenant_id]
            set_gauge("tenant_connections_in_use", self._connections_in_use())
        increment_counter(f"tenant_handles_evicted_total.{reason}")
        logger.info("tenant_handle_evicted tenant_id=%s reason=%s", handle.tenant_id, reason)

    async def evict(self, tenant_id: str) -> bool:
        async with self._lock_for(tenant_id):
            handle = self._handles.get(tenant_id)
            if handle is None:
                return False
            await self._evict_locked(handle, reason="manual")
            return True

    @asynccontextmanager
    async def lease(self, tenant_id: str) -> AsyncIterator[TenantHandle]:
        handle = await self.acquire(tenant_id)
        handle.begin_use(self._time())
        try:
            yield handle
        finally:
            handle.end_use(self._time())

    async def evict_idle(self) -> list[str]:
        now = self._time()
        evicted: list[str] = []
        for tenant_id, handle in list(self._handles.items()):
            if not handle.is_live or handle.in_flight:
                continue
            if now - handle.last_used_at < self._idle_timeout_s:
                continue
            lock = self._lock_for(tenant_id)
            if lock.locked():
                continue
            async with lock:
                current = self._handles.get(tenant_id)
                if current is not handle or handle.in_flight or not handle.is_live:
                    continue
                await self._evict_locked(handle, reason="idle")
                evicted.append(tenant_id)
        return evicted

    async def run_idle_sweeper(self, interval_s: float | None = None) -> None:
        interval = get_settings().tenant_idle_sweep_interval_s if interval_s is None else interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                evicted = await self.evict_idle()
            except Exception:  # noqa: BLE001 - keep sweeping on transient failures
                logger.exception("tenant_idle_sweep_failed")
                continue
            if evicted:
                logger.info("tenant_idle_sweep evicted=%s", len(evicted))

    async def close(self) -> int:
        self._closed = True
        closed = 0
        for tenant_id in list(self._handles):
            async with self._lock_for(tenant_id):
                handle = self._handles.get(tenant_id)
                if handle is None:
                    continue
                await self._evict_locked(handle, reason="shutdown")
                closed += 1
        logger.info("tenant_router_closed handles=%s", closed)
        return closed

    def stats(self) -> dict[str, Any]:
        now = self._time()
        handles = [
            {
                "tenant_id": handle.tenant_id,
                "state": handle.state,
                "in_flight": handle.in_flight,
                "cost": handle.cost,
                "age_s": round(now - handle.created_at, 3),
                "idle_s": round(now - handle.last_used_at, 3),
            }
            for handle in sorted(self._handles.values(), key=lambda item: item.tenant_id)
        ]
        return {
            "closed": self._closed,
            "handles": len(handles),
            "connections_in_use": self._connections_in_use(),
            "max_total_connections": self._max_total_connections,
            "tenants": handles,
        }
