from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from flockcast.core.errors import TenantNotFoundError
from flockcast.persistence.repos import outcomes as outcomes_repo
from flockcast.services import cache_keys
from flockcast.services.cache import CacheAside, get_cache
from flockcast.services.tenancy import TenantRouter


# Limits above this are presented as unlimited.
UNLIMITED_THRESHOLD = 100_000
UNLIMITED_REMAINING = 999_999

PLAN_LIMITS: dict[str, dict[str, Any]] = {
    "trial": {"name": "Trial", "members": 100, "messages_per_month": 250, "co_admins": 1},
    "starter": {"name": "Starter", "members": 500, "messages_per_month": 1000, "co_admins": 1},
    "growth": {"name": "Growth", "members": 2000, "messages_per_month": 5000, "co_admins": 3},
    "pro": {"name": "Pro", "members": 10000, "messages_per_month": 1_000_000, "co_admins": 10},
}


def _remaining(limit: int, used: int) -> int:
    if limit > UNLIMITED_THRESHOLD:
        return UNLIMITED_REMAINING
    return max(0, limit - used)


def _month_start(now: datetime | None = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def get_monthly_usage(
    router: TenantRouter,
    tenant_id: str,
    *,
    cache: CacheAside | None = None,
) -> dict[str, Any]:
    cache = cache or get_cache()

    async def _compute() -> dict[str, Any]:
        since = _month_start()
        async with router.lease(tenant_id) as handle:
            async with handle.session() as session:
                by_status = await outcomes_repo.count_recipients_since(session, since)
        return {
            "since": since.isoformat(),
            "messages_this_month": sum(by_status.values()),
            "by_status": by_status,
        }

    return await cache.get_or_compute(cache_keys.tenant_usage(tenant_id), cache_keys.TTL_SHORT, _compute)


async def get_plan_summary(
    router: TenantRouter,
    tenant_id: str,
    *,
    cache: CacheAside | None = None,
) -> dict[str, Any]:
    """Plan limits, current usage and remaining capacity for one tenant."""
    cache = cache or get_cache()

    async def _compute() -> dict[str, Any]:
        record = await router.directory.get_record(tenant_id)
        if record is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} is not registered")
        return {
            "plan": record.subscription_plan,
            "subscription_status": record.subscription_status,
            "trial_ends_at": record.trial_ends_at.isoformat() if record.trial_ends_at else None,
        }

    plan = await cache.get_or_compute(cache_keys.tenant_plan(tenant_id), cache_keys.TTL_MEDIUM, _compute)
    limits = PLAN_LIMITS.get(plan["plan"], PLAN_LIMITS["trial"])
    usage = await get_monthly_usage(router, tenant_id, cache=cache)
    return {
        **plan,
        "limits": limits,
        "usage": {"messages_this_month": usage["messages_this_month"]},
        "remaining": {
            "messages_per_month": _remaining(limits["messages_per_month"], usage["messages_this_month"]),
        },
    }
