from __future__ import annotations


class FlockcastError(Exception):
    """Base error for flockcast."""


class ProvisioningError(FlockcastError):
    """Tenant database creation, schema application or registry write failed."""


class HandleAcquisitionError(FlockcastError):
    """A tenant database handle could not be produced."""


class TenantNotFoundError(HandleAcquisitionError):
    """Tenant id is unknown to the registry."""


class TenantSuspendedError(HandleAcquisitionError):
    """Tenant exists but its lifecycle status is not active."""


class ConnectionBudgetExceeded(HandleAcquisitionError):
    """No idle handle could be evicted to stay under the connection ceiling."""


class RouterClosedError(HandleAcquisitionError):
    """The router is shutting down and no longer hands out handles."""


class CacheUnavailable(FlockcastError):
    """Cache backend missing, failing or too slow; callers degrade to the source."""


class ProviderError(FlockcastError):
    """Messaging provider failure."""


class ProviderConfigError(ProviderError):
    """Missing or invalid messaging provider configuration."""


class ProviderRejected(ProviderError):
    """The provider refused the message.

    ``permanent`` marks rejections that cannot succeed on retry (invalid number,
    opted-out recipient) so the delivery loop exhausts immediately.
    """

    def __init__(self, reason: str, *, permanent: bool = False, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.permanent = permanent
        self.status_code = status_code


class PermanentDeliveryFailure(FlockcastError):
    """Delivery attempts are exhausted; the failure is persisted, not retried."""

    def __init__(self, reason: str, *, attempts: int) -> None:
        super().__init__(reason)
        self.reason = reason
        self.attempts = attempts


class IntegrationUnavailableError(FlockcastError):
    """Circuit breaker is open for an external integration."""


class DeadLetterNotFoundError(FlockcastError):
    """No dead letter with the given id."""


class DeadLetterStateError(FlockcastError):
    """The dead letter cannot take the requested transition."""
