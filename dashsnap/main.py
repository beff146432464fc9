from contextlib import asynccontextmanager
from datetime import datetime
from zoneinfo import ZoneInfo
import structlog
from fastapi import FastAPI
from .logging import setup_logging
from .api.routes import router as snapshots_router, health_router
from .config import Settings, settings
from .db import ConnectionPool
from .pipeline.aggregator import SnapshotAggregator
from .pipeline.retrieval import SnapshotRetrieval
from .pipeline.scheduler import Schedule, SnapshotScheduler
from .pipeline.store import SnapshotStore
from .providers.source_gateway import SourceGateway
from .services.telegram import TelegramClient, exhausted_notifier

log = structlog.get_logger()

def create_app(app_settings: Settings = settings, fetchers: dict | None = None, clock=None) -> FastAPI:
    tz = ZoneInfo(app_settings.local_tz)
    clock = clock or (lambda: datetime.now(tz))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pool = ConnectionPool(app_settings.db_path, app_settings.db_pool_size, app_settings.db_busy_timeout_seconds)
        store = SnapshotStore(pool)
        store.migrate()
        gateway = None
        source_fetchers = fetchers
        if source_fetchers is None:
            gateway = SourceGateway(app_settings.source_base_url, app_settings.source_timeout_seconds)
            source_fetchers = gateway.fetchers()
        aggregator = SnapshotAggregator(source_fetchers)
        notifier = None
        if app_settings.telegram_bot_token and app_settings.telegram_chat_id:
            notifier = exhausted_notifier(TelegramClient(app_settings.telegram_bot_token, app_settings.telegram_chat_id))
        engine = SnapshotScheduler(
            aggregator,
            store,
            [Schedule.from_config(cfg) for cfg in app_settings.snapshot_schedules],
            local_tz=app_settings.local_tz,
            check_interval_seconds=app_settings.scheduler_check_interval_seconds,
            clock=clock,
            notifier=notifier,
        )
        app.state.clock = clock
        app.state.store = store
        app.state.retrieval = SnapshotRetrieval(store)
        app.state.aggregator = aggregator
        app.state.engine = engine
        if app_settings.scheduler_enabled:
            engine.start()
        log.info("service_started", db_path=app_settings.db_path, scheduler_enabled=bool(app_settings.scheduler_enabled))
        try:
            yield
        finally:
            engine.stop()
            if not await engine.drain(timeout=30):
                log.warning("service_shutdown_with_runs_in_flight")
            if gateway is not None:
                await gateway.aclose()
            pool.close()
            log.info("service_stopped")

    app = FastAPI(title="dashboard-snapshot-service", lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(snapshots_router)
    return app

setup_logging()
app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
