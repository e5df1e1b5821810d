from __future__ import annotations

from flockcast.core.errors import PermanentDeliveryFailure
from flockcast.domain.records import OutboundStatus
from flockcast.services.tenancy import TenantDirectory


class OutboundGate:
    """Dispatch-time check that a tenant may still send.

    Suspensions and lapsed subscriptions take effect on the next attempt; queued
    jobs are not cancelled.
    """

    def __init__(self, directory: TenantDirectory) -> None:
        self._directory = directory

    async def check(self, tenant_id: str, *, attempt: int) -> OutboundStatus:
        status = await self._directory.get_outbound_status(tenant_id)
        if status is None:
            raise PermanentDeliveryFailure(f"Tenant {tenant_id} is not registered", attempts=attempt)
        reason = status.blocked_reason()
        if reason is not None:
            raise PermanentDeliveryFailure(reason, attempts=attempt)
        return status
