from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flockcast.domain.models import Tenant


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def get_by_organization(session: AsyncSession, organization_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.organization_id == organization_id))
    return result.scalar_one_or_none()


async def list_tenants(session: AsyncSession, *, status: str | None = None) -> list[Tenant]:
    stmt = select(Tenant).order_by(Tenant.created_at.asc())
    if status is not None:
        stmt = stmt.where(Tenant.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def add_tenant(session: AsyncSession, tenant: Tenant) -> Tenant:
    session.add(tenant)
    return tenant


async def set_status(session: AsyncSession, tenant_id: str, status: str) -> bool:
    result = await session.execute(update(Tenant).where(Tenant.id == tenant_id).values(status=status))
    return bool(result.rowcount)


async def set_connection_url(session: AsyncSession, tenant_id: str, connection_url: str) -> bool:
    # Only the repair pass calls this; provisioning writes the URL on insert.
    result = await session.execute(
        update(Tenant).where(Tenant.id == tenant_id).values(connection_url=connection_url)
    )
    return bool(result.rowcount)


async def touch_last_accessed(session: AsyncSession, tenant_id: str, *, at: datetime | None = None) -> None:
    await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(last_accessed_at=at or datetime.now(timezone.utc))
    )
