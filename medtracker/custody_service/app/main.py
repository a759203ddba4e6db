from contextlib import asynccontextmanager

from fastapi import FastAPI

from medtracker.common import (
    DEFAULT_APP_NAME,
    ServiceSettings,
    build_app,
    configure_logging,
    create_schema,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
)
from medtracker.common.kafka import KafkaProducerStub

from .api.audit import router as audit_router
from .api.auth import router as auth_router
from .api.cases import router as cases_router
from .api.data import router as data_router
from .api.health import router as health_router
from .api.incidents import router as incidents_router
from .api.inventory import router as inventory_router
from .api.locations import router as locations_router
from .api.orders import router as orders_router
from .clock import Clock, utcnow
from .events import AuditEventPublisher
from .models import Base
from .services import CustodyService

SERVICE_NAME = "Custody Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./custody_service.db"


def create_app(settings: ServiceSettings | None = None, *, clock: Clock = utcnow) -> FastAPI:
    """Create the Custody Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        kafka_producer: KafkaProducerStub | None = None
        event_publisher: AuditEventPublisher | None = None
        app.state.session_factory = session_factory
        try:
            await create_schema(database_url, Base.metadata)
            if resolved_settings.enable_event_stream:
                kafka_producer = KafkaProducerStub(client_id="custody-service")
                await kafka_producer.connect()
                event_publisher = AuditEventPublisher(kafka_producer, topic=resolved_settings.audit_topic)
            app.state.event_publisher = event_publisher
            app.state.custody_service = CustodyService(
                session_factory,
                clock=clock,
                publisher=event_publisher,
                settings=resolved_settings,
            )
            yield
        finally:
            app.state.session_factory = None  # type: ignore[assignment]
            app.state.custody_service = None
            app.state.event_publisher = None
            if kafka_producer is not None:
                await kafka_producer.close()
            await dispose_engines()

    app = build_app(resolved_settings, lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(inventory_router)
    app.include_router(locations_router)
    app.include_router(orders_router)
    app.include_router(cases_router)
    app.include_router(incidents_router)
    app.include_router(audit_router)
    app.include_router(data_router)
    return app


app = create_app()
