from __future__ import annotations


# Every tenant-derived key lives under tenant:{id}: so one SCAN pattern clears a tenant.


def tenant_plan(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:billing:plan"


def tenant_usage(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:billing:usage"


def tenant_outbound(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:outbound"


def tenant_stats(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:stats"


def tenant_all(tenant_id: str) -> str:
    return f"tenant:{tenant_id}:*"


def plan_limits(plan_name: str) -> str:
    return f"plan:{plan_name}:limits"


# TTL presets in seconds.
TTL_SHORT = 5 * 60
TTL_MEDIUM = 30 * 60
TTL_LONG = 60 * 60
TTL_EXTENDED = 24 * 60 * 60
# Outbound gating must notice suspensions quickly.
TTL_OUTBOUND = 60
