from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from flockcast.core.config import get_settings
from flockcast.providers.messaging import MessagingProvider, get_messaging_provider
from flockcast.services.cache import CacheAside, get_cache
from flockcast.services.delivery.processor import DeliveryProcessor, RetryScheduler
from flockcast.services.tenancy import SqlAlchemyHandleFactory, TenantDirectory, TenantRouter


logger = logging.getLogger(__name__)


@dataclass
class DeliveryRuntime:
    """Process-lifetime collaborators shared by every delivery job."""

    router: TenantRouter
    provider: MessagingProvider
    cache: CacheAside
    sweeper_task: asyncio.Task[None] | None = None

    @classmethod
    def build(
        cls,
        *,
        provider: MessagingProvider | None = None,
        router: TenantRouter | None = None,
        cache: CacheAside | None = None,
    ) -> "DeliveryRuntime":
        cache = cache or get_cache()
        if router is None:
            router = TenantRouter(TenantDirectory(cache=cache), SqlAlchemyHandleFactory())
        return cls(router=router, provider=provider or get_messaging_provider(), cache=cache)

    def processor_for(self, scheduler: RetryScheduler) -> DeliveryProcessor:
        return DeliveryProcessor(self.router, self.provider, scheduler=scheduler)

    def start_idle_sweeper(self) -> None:
        if self.sweeper_task is None:
            self.sweeper_task = asyncio.create_task(
                self.router.run_idle_sweeper(get_settings().tenant_idle_sweep_interval_s)
            )

    async def aclose(self) -> None:
        if self.sweeper_task is not None:
            self.sweeper_task.cancel()
            try:
                await self.sweeper_task
            except asyncio.CancelledError:
                pass
            self.sweeper_task = None
        await self.router.close()
        await self.cache.flush_pending_writes()
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()
        logger.info("delivery_runtime_closed")


_inline_runtime: DeliveryRuntime | None = None


def get_inline_runtime() -> DeliveryRuntime:
    # Inline mode shares one runtime per process, like a worker would.
    global _inline_runtime
    if _inline_runtime is None:
        _inline_runtime = DeliveryRuntime.build()
    return _inline_runtime


def set_inline_runtime(runtime: DeliveryRuntime | None) -> None:
    global _inline_runtime
    _inline_runtime = runtime
