from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Protocol
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flockcast.core.config import TENANT_SCHEMA_VERSION, get_settings
from flockcast.core.errors import ProvisioningError, TenantNotFoundError
from flockcast.domain.models import Tenant, TenantBase
from flockcast.domain.records import (
    TENANT_STATUS_ACTIVE,
    TENANT_STATUS_SUSPENDED,
    TenantRecord,
    build_tenant_url,
    parse_connection_url,
)
from flockcast.persistence.db import SessionLocal
from flockcast.persistence.repos import tenants as tenants_repo
from flockcast.services.cache import CacheAside


logger = logging.getLogger(__name__)

TRIAL_PERIOD_DAYS = 14
# Database names are interpolated into DDL, so only plain identifiers are accepted.
_DATABASE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

SchemaApplier = Callable[[str], Awaitable[None]]


class DatabaseAdmin(Protocol):
    async def create_database(self, name: str) -> None:
        ...

    async def drop_database(self, name: str) -> None:
        ...

    async def database_exists(self, name: str) -> bool:
        ...


def _checked_name(name: str) -> str:
    if not _DATABASE_NAME_RE.match(name):
        raise ProvisioningError(f"Invalid tenant database name: {name!r}")
    return name


class PostgresDatabaseAdmin:
    """Issues CREATE/DROP DATABASE against the coordinator's maintenance database."""

    def __init__(self, coordinator_url: str | None = None, *, maintenance_db: str | None = None) -> None:
        settings = get_settings()
        base = make_url(coordinator_url or settings.coordinator_database_url)
        self._url = base.set(database=maintenance_db or settings.coordinator_maintenance_db)

    async def _execute(self, statement: str, params: dict | None = None):
        # CREATE DATABASE cannot run inside a transaction block.
        engine = create_async_engine(self._url, isolation_level="AUTOCOMMIT")
        try:
            async with engine.connect() as conn:
                result = await conn.execute(text(statement), params or {})
                return result.fetchall() if result.returns_rows else None
        finally:
            await engine.dispose()

    async def create_database(self, name: str) -> None:
        await self._execute(f'CREATE DATABASE "{_checked_name(name)}"')

    async def drop_database(self, name: str) -> None:
        await self._execute(f'DROP DATABASE IF EXISTS "{_checked_name(name)}"')

    async def database_exists(self, name: str) -> bool:
        rows = await self._execute("SELECT 1 FROM pg_database WHERE datname = :name", {"name": name})
        return bool(rows)


async def apply_tenant_schema(url: str) -> None:
    engine = create_async_engine(url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(TenantBase.metadata.create_all)
    finally:
        await engine.dispose()


class ProvisioningService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        admin: DatabaseAdmin | None = None,
        schema_applier: SchemaApplier | None = None,
        coordinator_url: str | None = None,
        cache: CacheAside | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or SessionLocal
        self._coordinator_url = coordinator_url or settings.coordinator_database_url
        self._admin = admin or PostgresDatabaseAdmin(self._coordinator_url)
        self._apply_schema = schema_applier or apply_tenant_schema
        self._database_prefix = settings.tenant_database_prefix
        self._cache = cache

    def _tenant_url(self, *, host: str, port: int, database_name: str) -> str:
        return build_tenant_url(self._coordinator_url, host=host, port=port, database_name=database_name)

    async def provision(
        self,
        organization_id: str,
        *,
        name: str,
        email: str | None = None,
        plan: str = "trial",
        sender_phone_number: str | None = None,
    ) -> TenantRecord:
        """Create an isolated tenant database and register it.

        Either the database exists with its schema and a registry row points at it,
        or neither exists: a failure after CREATE DATABASE drops the database again.
        """
        async with self._session_factory() as session:
            if await tenants_repo.get_by_organization(session, organization_id) is not None:
                raise ProvisioningError(f"Organization {organization_id} already has a tenant database")

        tenant_id = uuid4().hex
        database_name = f"{self._database_prefix}{tenant_id}"
        host, port, _ = parse_connection_url(self._coordinator_url)
        connection_url = self._tenant_url(host=host, port=port, database_name=database_name)

        try:
            await self._admin.create_database(database_name)
        except ProvisioningError:
            raise
        except Exception as exc:
            logger.error("tenant_database_create_failed tenant_id=%s error=%s", tenant_id, exc)
            raise ProvisioningError(f"Failed to create database {database_name}") from exc

        try:
            await self._apply_schema(connection_url)
            now = datetime.now(timezone.utc)
            tenant = Tenant(
                id=tenant_id,
                organization_id=organization_id,
                name=name,
                email=email,
                connection_url=connection_url,
                host=host,
                port=port,
                database_name=database_name,
                subscription_plan=plan,
                subscription_status="trial" if plan == "trial" else "active",
                trial_ends_at=now + timedelta(days=TRIAL_PERIOD_DAYS) if plan == "trial" else None,
                status=TENANT_STATUS_ACTIVE,
                schema_version=TENANT_SCHEMA_VERSION,
                sender_phone_number=sender_phone_number,
            )
            async with self._session_factory() as session:
                tenants_repo.add_tenant(session, tenant)
                await session.commit()
                await session.refresh(tenant)
                record = TenantRecord.model_validate(tenant)
        except Exception as exc:
            await self._rollback_database(database_name, tenant_id=tenant_id)
            if isinstance(exc, IntegrityError):
                raise ProvisioningError(
                    f"Organization {organization_id} already has a tenant database"
                ) from exc
            logger.error(
                "tenant_provision_failed tenant_id=%s organization_id=%s error=%s",
                tenant_id,
                organization_id,
                exc,
            )
            raise ProvisioningError(f"Failed to provision tenant for {organization_id}") from exc

        logger.info("tenant_provisioned tenant_id=%s database=%s", tenant_id, database_name)
        return record

    async def _rollback_database(self, database_name: str, *, tenant_id: str) -> None:
        try:
            await self._admin.drop_database(database_name)
        except Exception as exc:  # noqa: BLE001 - the original failure is what callers see
            logger.error(
                "tenant_database_rollback_failed tenant_id=%s database=%s error=%s",
                tenant_id,
                database_name,
                exc,
            )
        else:
            logger.warning("tenant_database_rolled_back tenant_id=%s database=%s", tenant_id, database_name)

    async def _repair(self, tenant_id: str) -> tuple[TenantRecord, bool]:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            if tenant is None:
                raise TenantNotFoundError(f"Tenant {tenant_id} is not registered")
            expected = self._tenant_url(host=tenant.host, port=tenant.port, database_name=tenant.database_name)
            if tenant.connection_url == expected:
                return TenantRecord.model_validate(tenant), False
            await tenants_repo.set_connection_url(session, tenant_id, expected)
            await session.commit()
            await session.refresh(tenant)
            logger.info("tenant_connection_url_repaired tenant_id=%s", tenant_id)
            return TenantRecord.model_validate(tenant), True

    async def repair_connection_url(self, tenant_id: str) -> TenantRecord:
        # Rebuild the URL from the stored coordinates; returns the row unchanged when correct.
        record, _ = await self._repair(tenant_id)
        return record

    async def repair_all_connection_urls(self) -> list[str]:
        async with self._session_factory() as session:
            tenant_ids = [tenant.id for tenant in await tenants_repo.list_tenants(session)]
        repaired: list[str] = []
        for tenant_id in tenant_ids:
            _, changed = await self._repair(tenant_id)
            if changed:
                repaired.append(tenant_id)
        return repaired

    async def deprovision(self, tenant_id: str) -> TenantRecord:
        # Tenant databases are retained; only the lifecycle status changes.
        async with self._session_factory() as session:
            if not await tenants_repo.set_status(session, tenant_id, TENANT_STATUS_SUSPENDED):
                raise TenantNotFoundError(f"Tenant {tenant_id} is not registered")
            await session.commit()
            tenant = await tenants_repo.get_tenant(session, tenant_id)
            record = TenantRecord.model_validate(tenant)
        if self._cache is not None:
            await self._cache.invalidate_tenant(tenant_id)
        logger.info("tenant_suspended tenant_id=%s", tenant_id)
        return record

    async def tenant_database_exists(self, tenant_id: str) -> bool:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} is not registered")
        return await self._admin.database_exists(tenant.database_name)
