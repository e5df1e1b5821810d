from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flockcast.core.errors import TenantNotFoundError, TenantSuspendedError
from flockcast.domain.records import OutboundStatus, TenantRecord
from flockcast.persistence.db import SessionLocal
from flockcast.persistence.repos import tenants as tenants_repo
from flockcast.services import cache_keys
from flockcast.services.cache import CacheAside


logger = logging.getLogger(__name__)


class TenantDirectory:
    """Registry lookups used by the router and the delivery gate."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        cache: CacheAside | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._cache = cache

    async def get_record(self, tenant_id: str) -> TenantRecord | None:
        async with self._session_factory() as session:
            row = await tenants_repo.get_tenant(session, tenant_id)
            return TenantRecord.model_validate(row) if row is not None else None

    async def resolve(self, tenant_id: str) -> TenantRecord:
        # Only active tenants resolve to a connection descriptor.
        record = await self.get_record(tenant_id)
        if record is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} is not registered")
        if not record.is_active:
            raise TenantSuspendedError(f"Tenant {tenant_id} is {record.status}")
        await self._touch(tenant_id)
        return record

    async def _touch(self, tenant_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await tenants_repo.touch_last_accessed(session, tenant_id)
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - access bookkeeping must not block routing
            logger.warning("tenant_touch_failed tenant_id=%s error=%s", tenant_id, exc)

    async def get_outbound_status(self, tenant_id: str) -> OutboundStatus | None:
        async def _load() -> dict[str, Any] | None:
            record = await self.get_record(tenant_id)
            if record is None:
                return None
            return OutboundStatus.from_record(record).model_dump(mode="json")

        if self._cache is None:
            raw = await _load()
        else:
            raw = await self._cache.get_or_compute(
                cache_keys.tenant_outbound(tenant_id),
                cache_keys.TTL_OUTBOUND,
                _load,
            )
        return OutboundStatus.model_validate(raw) if raw is not None else None
