"""Resilience core lifecycle management.

Handles startup and shutdown of the registry and its counter store, so a
host application can wire the core into its own lifespan hook:

    async with resilience_lifespan(settings) as registry:
        decision = await registry.try_acquire("api", client_id)
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from bulwark.core.config import ResilienceSettings, create_settings
from bulwark.core.logging import configure_logging, logger
from bulwark.core.metrics import DecisionMetrics
from bulwark.core.registry import ResilienceRegistry
from bulwark.domain.interfaces import IClock, ICounterStore


@asynccontextmanager
async def resilience_lifespan(
    settings: Optional[ResilienceSettings] = None,
    clock: Optional[IClock] = None,
    metrics: Optional[DecisionMetrics] = None,
    store: Optional[ICounterStore] = None,
) -> AsyncIterator[ResilienceRegistry]:
    """Run a ResilienceRegistry for the duration of the context.

    An unreachable store at startup is logged as degraded rather than
    raised: each policy's failure mode already defines what decisions do
    without the store, and the store may come back.

    Args:
        settings: Settings to build from; read from the environment if omitted.
        clock: Time source override.
        metrics: Optional decision metrics collector.
        store: Counter store override.

    Yields:
        ResilienceRegistry: The started registry.
    """
    settings = settings or create_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    registry = ResilienceRegistry.from_settings(settings, clock=clock, metrics=metrics, store=store)

    # Startup
    if await registry.store.ping():
        logger.info("resilience_startup", env=settings.APP_ENV, backend=settings.STORE_BACKEND)
    else:
        logger.warning("counter_store_unavailable_on_startup", backend=settings.STORE_BACKEND)

    await registry.start()
    try:
        yield registry
    finally:
        # Shutdown
        await registry.shutdown()
        await registry.store.close()
        logger.info("resilience_shutdown", env=settings.APP_ENV)
