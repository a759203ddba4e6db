from collections.abc import Iterable
from typing import Any, cast

from fastapi import APIRouter, FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .config import ServiceSettings
from .tracing import configure_tracing

API_VERSION = "1.0.0"


def instrument_app(app: FastAPI, settings: ServiceSettings) -> None:
    """Attach metrics exporters when enabled and keep settings on app state."""

    if settings.enable_metrics:
        Instrumentator(excluded_handlers=["/health", "/metrics"]).instrument(app).expose(app)

    state = cast(Any, app.state)
    state.settings = settings


def build_app(
    settings: ServiceSettings,
    *,
    routers: Iterable[APIRouter] = (),
    **extra_kwargs: Any,
) -> FastAPI:
    """Create a FastAPI instance with standard metadata, instrumentation and routers."""

    app = FastAPI(title=settings.app_name, version=API_VERSION, **extra_kwargs)
    instrument_app(app, settings)
    configure_tracing(app, settings)
    for router in routers:
        app.include_router(router)
    return app
