from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from httpx import AsyncClient

from storefront.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    close_redis_connections,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
)

from .api.cron import router as cron_router
from .api.delivery import router as delivery_router
from .api.health import router as health_router
from .api.shipments import router as shipments_router
from .api.webhooks import router as webhooks_router
from .courier import DelhiveryGateway
from .jobs import ShipmentSyncScheduler
from .models import Base
from .rate_limit import EditRateLimiter

SERVICE_NAME = "Shipment Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./shipment_service.db"


def create_app(settings: ServiceSettings | None = None) -> FastAPI:
    """Create the Shipment Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)
    redis_client = resolve_redis(resolved_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client: AsyncClient | None = None
        scheduler: ShipmentSyncScheduler | None = None
        app.state.session_factory = session_factory
        try:
            if resolved_settings.auto_create_schema:
                await create_schema(database_url, Base.metadata)
            http_client = AsyncClient(timeout=resolved_settings.delhivery_timeout_seconds)
            gateway = DelhiveryGateway.from_settings(resolved_settings, client=http_client, redis=redis_client)
            app.state.courier_gateway = gateway
            app.state.edit_rate_limiter = EditRateLimiter(
                limit=resolved_settings.edit_rate_limit,
                window_seconds=resolved_settings.edit_rate_window_seconds,
                redis=redis_client,
            )
            if resolved_settings.shipment_sync_enabled:
                scheduler = ShipmentSyncScheduler(session_factory, gateway, resolved_settings)
                await scheduler.start()
            app.state.sync_scheduler = scheduler
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.courier_gateway = None
            app.state.edit_rate_limiter = None
            app.state.sync_scheduler = None
            if http_client is not None:
                await http_client.aclose()
            await dispose_engines()
            if redis_client is not None:
                await close_redis_connections()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(shipments_router)
    app.include_router(delivery_router)
    app.include_router(webhooks_router)
    app.include_router(cron_router)
    return app


app = create_app()


def run(settings: ServiceSettings | None = None) -> None:
    """Serve the module-level app with uvicorn (``shipment-service`` console script)."""

    resolved_settings = settings or ServiceSettings()
    uvicorn.run(
        "storefront.shipment_service.app.main:app",
        host=resolved_settings.service_host,
        port=resolved_settings.service_port,
        log_level=resolved_settings.log_level.lower(),
    )
