from flockcast.services.tenancy.directory import TenantDirectory
from flockcast.services.tenancy.router import (
    HandleFactory,
    SqlAlchemyHandleFactory,
    TenantConnection,
    TenantDatabase,
    TenantHandle,
    TenantRouter,
)

__all__ = [
    "TenantDirectory",
    "HandleFactory",
    "SqlAlchemyHandleFactory",
    "TenantConnection",
    "TenantDatabase",
    "TenantHandle",
    "TenantRouter",
]
