from typing import Any, cast

from fastapi import FastAPI
# Metrics exporter is optional for one-off scripts.
try:  # pragma: no cover - optional dependency handling
    from prometheus_fastapi_instrumentator import Instrumentator
except ModuleNotFoundError:  # pragma: no cover - executed only when optional dep missing
    Instrumentator = None  # type: ignore[assignment]

from .config import ServiceSettings
from .tracing import configure_tracing

SERVICE_VERSION = "1.0.0"
_UNMETERED_PATHS = ["/metrics", "/health", "/health/ready", "/webhooks/delhivery/health"]


def instrument_app(app: FastAPI, settings: ServiceSettings) -> None:
    """Expose request metrics and keep the resolved settings on ``app.state``.

    Probe endpoints are not metered.
    """

    state = cast(Any, app.state)
    state.settings = settings
    if not settings.enable_metrics or Instrumentator is None:
        return
    instrumentator = Instrumentator(
        excluded_handlers=_UNMETERED_PATHS,
        should_group_status_codes=True,
        should_ignore_untemplated=True,
    )
    instrumentator.instrument(app).expose(app, include_in_schema=False)


def build_app(settings: ServiceSettings, **extra_kwargs: Any) -> FastAPI:
    """Create the FastAPI instance with metadata, metrics and tracing attached."""

    app = FastAPI(
        title=settings.app_name,
        version=SERVICE_VERSION,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        **extra_kwargs,
    )
    instrument_app(app, settings)
    configure_tracing(app, settings)
    return app
