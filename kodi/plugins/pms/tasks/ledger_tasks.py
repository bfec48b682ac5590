import asyncio

import dramatiq
import structlog

from kodi.core.config import settings
from kodi.core.database import AsyncDatabaseManager
from kodi.core.scheduler_decorators import run_cron
from kodi.plugins.pms.accounting.rollover import MonthlyRollover
from kodi.plugins.pms.services.store import MongoStore
from kodi.workers import broker  # noqa: F401  registers the RabbitMQ broker before actors are declared

logger = structlog.get_logger(__name__)


@run_cron(settings.ROLLOVER_CRON, timezone=settings.TIMEZONE)
@dramatiq.actor(max_retries=3)
def reset_monthly_payments():
    """Entry point for Dramatiq (sync context)."""
    result = asyncio.run(_async_reset_monthly_payments())
    logger.info("monthly_reset_done", **result)


async def _async_reset_monthly_payments() -> dict:
    """Runs inside its own event loop with its own connection pool."""
    manager = AsyncDatabaseManager()
    await manager.initialize()
    try:
        store = MongoStore(manager.database, manager.client)
        return await MonthlyRollover(store).reset_monthly_tracking()
    finally:
        await manager.close()
