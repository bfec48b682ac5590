from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kodi.core.config import settings
from kodi.core.database import AsyncDatabaseConfig, db_manager
from kodi.core.logging_config import configure_logging
from kodi.core.mongo import MongoORJSONResponse
from kodi.metrics.metrics import get_metrics
from kodi.plugins.pms.accounting.rollover import MonthlyRollover
from kodi.plugins.pms.plugin import init_plugin as init_pms_plugin
from kodi.plugins.pms.services.payment_status import PaymentStatusService
from kodi.plugins.pms.services.reconciliation import ReconciliationService
from kodi.plugins.pms.services.store import MongoStore
from kodi.plugins.sms.services.notifier import SmsNotifier
from kodi.plugins.sms.services.providers.provider_selector import get_provider

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: database, store, notifier and services on app.state"""
    logger.info("startup", app=settings.APP_NAME, env=settings.APP_ENV)

    await db_manager.initialize(config=AsyncDatabaseConfig.from_env())
    metrics = get_metrics()

    store = MongoStore(db_manager.database, db_manager.client)
    await store.ensure_indexes()
    notifier = SmsNotifier(get_provider(settings.SMS_PROVIDER), store, metrics=metrics)

    reconciliation = ReconciliationService(store, notifier=notifier, metrics=metrics)
    app.state.store = store
    app.state.notifier = notifier
    app.state.metrics = metrics
    app.state.reconciliation = reconciliation
    app.state.rollover = MonthlyRollover(store, metrics=metrics)
    app.state.payment_status = PaymentStatusService(store, notifier=notifier)

    health = await db_manager.health_check()
    if health["status"] != "healthy":
        raise RuntimeError(f"Database unhealthy: {health}")
    logger.info("startup_complete", database=health.get("database"))

    yield

    await reconciliation.drain()
    await db_manager.close()
    logger.info("shutdown_complete")


app = FastAPI(
    title=settings.APP_NAME,
    description="M-Pesa rent payment reconciliation and monthly tenant ledgers",
    version="1.0.0",
    lifespan=lifespan,
    default_response_class=MongoORJSONResponse,
)

app.include_router(init_pms_plugin(app))


@app.get("/health")
async def health():
    return await db_manager.health_check()


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
