from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from sqlalchemy.engine import URL, make_url


TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_SUSPENDED = "suspended"
# Subscription states that block outbound messaging at dispatch time.
BLOCKED_SUBSCRIPTION_STATUSES = frozenset({"canceled", "unpaid", "suspended"})


@dataclass(frozen=True)
class ConnectionDescriptor:
    # Everything a handle factory needs to open a tenant database; nothing else.
    tenant_id: str
    url: str
    host: str
    port: int
    database_name: str

    def redacted_url(self) -> str:
        # Never log tenant credentials.
        return make_url(self.url).render_as_string(hide_password=True)


class TenantRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    name: str
    email: str | None = None
    connection_url: str
    host: str
    port: int
    database_name: str
    subscription_plan: str
    subscription_status: str
    trial_ends_at: datetime | None = None
    status: str
    schema_version: str
    sender_phone_number: str | None = None
    rcs_agent_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_accessed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == TENANT_STATUS_ACTIVE

    def connection_descriptor(self) -> ConnectionDescriptor:
        return ConnectionDescriptor(
            tenant_id=self.id,
            url=self.connection_url,
            host=self.host,
            port=self.port,
            database_name=self.database_name,
        )


class OutboundStatus(BaseModel):
    # Compact, cacheable projection of a tenant row used by delivery workers at dispatch.
    tenant_id: str
    status: str
    subscription_status: str
    trial_ends_at: datetime | None = None
    sender_phone_number: str | None = None
    rcs_agent_id: str | None = None

    @classmethod
    def from_record(cls, record: TenantRecord) -> "OutboundStatus":
        return cls(
            tenant_id=record.id,
            status=record.status,
            subscription_status=record.subscription_status,
            trial_ends_at=record.trial_ends_at,
            sender_phone_number=record.sender_phone_number,
            rcs_agent_id=record.rcs_agent_id,
        )

    def blocked_reason(self, *, now: datetime | None = None) -> str | None:
        # Return why outbound sending is disabled, or None when the tenant may send.
        if self.status != TENANT_STATUS_ACTIVE:
            return f"Tenant is {self.status}"
        if self.subscription_status in BLOCKED_SUBSCRIPTION_STATUSES:
            return f"Subscription is {self.subscription_status}"
        if self.subscription_status == "trial" and self.trial_ends_at is not None:
            current = now or datetime.now(timezone.utc)
            trial_ends_at = self.trial_ends_at
            if trial_ends_at.tzinfo is None:
                trial_ends_at = trial_ends_at.replace(tzinfo=timezone.utc)
            if trial_ends_at <= current:
                return "Trial has expired"
        return None


def parse_connection_url(url: str) -> tuple[str, int, str]:
    # Return (host, port, database) so callers can round-trip stored descriptors.
    parsed: URL = make_url(url)
    return parsed.host or "", int(parsed.port or 5432), parsed.database or ""


def build_tenant_url(coordinator_url: str, *, host: str, port: int, database_name: str) -> str:
    # Reuse the coordinator's driver and credentials; only the location changes.
    base = make_url(coordinator_url)
    return base.set(host=host, port=port, database=database_name).render_as_string(hide_password=False)
