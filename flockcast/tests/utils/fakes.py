from __future__ import annotations

import asyncio
import fnmatch
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from flockcast.core.errors import HandleAcquisitionError
from flockcast.domain.records import ConnectionDescriptor


class StubRedis:
    """In-memory subset of redis.asyncio used by the cache layer.

    ``fail`` raises on every call, ``delay_s`` makes every call slow.
    """

    def __init__(self, *, fail: bool = False, delay_s: float = 0.0) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail
        self.delay_s = delay_s
        self.calls: list[str] = []

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail:
            raise ConnectionError("redis down")

    async def get(self, key: str) -> str | None:
        await self._enter("get")
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        await self._enter("setex")
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys: str) -> int:
        await self._enter("delete")
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str, count: int = 100) -> AsyncIterator[str]:
        await self._enter("scan_iter")
        for key in list(self.store):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self) -> bool:
        await self._enter("ping")
        return True


@dataclass
class FakeDatabaseAdmin:
    # Records DDL instead of issuing it; ``fail_create`` simulates a server error.
    fail_create: bool = False
    databases: set[str] = field(default_factory=set)
    dropped: list[str] = field(default_factory=list)

    async def create_database(self, name: str) -> None:
        if self.fail_create:
            raise OSError("connection refused")
        self.databases.add(name)

    async def drop_database(self, name: str) -> None:
        self.dropped.append(name)
        self.databases.discard(name)

    async def database_exists(self, name: str) -> bool:
        return name in self.databases


class FakeConnection:
    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.disposed = False

    def session(self) -> AsyncSession:
        raise NotImplementedError("fake connections do not open sessions")

    async def dispose(self) -> None:
        self.disposed = True


class FakeHandleFactory:
    """Handle factory that never touches a database.

    ``open_delay_s`` widens the window between the budget check and the handle
    landing in the cache, ``fail_for`` lists tenants whose database is unreachable.
    """

    def __init__(self, *, cost: int = 1, open_delay_s: float = 0.0, fail_for: set[str] | None = None) -> None:
        self._cost = cost
        self.open_delay_s = open_delay_s
        self.fail_for = fail_for or set()
        self.opened: list[str] = []
        self.connections: list[FakeConnection] = []

    @property
    def connection_cost(self) -> int:
        return self._cost

    async def open_handle(self, descriptor: ConnectionDescriptor) -> FakeConnection:
        if self.open_delay_s:
            await asyncio.sleep(self.open_delay_s)
        if descriptor.tenant_id in self.fail_for:
            raise HandleAcquisitionError(f"Tenant {descriptor.tenant_id} database is unreachable")
        self.opened.append(descriptor.tenant_id)
        connection = FakeConnection(descriptor.tenant_id)
        self.connections.append(connection)
        return connection


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def collect_schedules() -> tuple[list[tuple[Any, float]], Any]:
    # Retry scheduler that records (payload, delay) instead of enqueueing.
    scheduled: list[tuple[Any, float]] = []

    async def _schedule(payload: Any, delay_s: float) -> None:
        scheduled.append((payload, delay_s))

    return scheduled, _schedule
