"""Shared utilities for MedTracker services."""

from .config import DEFAULT_APP_NAME, ServiceSettings, get_settings
from .instrumentation import build_app, instrument_app
from .logging import bound_actor, configure_logging
from .database import (
    create_engine,
    create_schema,
    dispose_engines,
    get_session_factory,
    lifespan_session,
    resolve_database_url,
)
from .kafka import KafkaConsumerStub, KafkaProducerStub
from .security import hash_password, verify_password
from .tracing import workflow_span

__all__ = [
    "ServiceSettings",
    "get_settings",
    "build_app",
    "instrument_app",
    "configure_logging",
    "bound_actor",
    "DEFAULT_APP_NAME",
    "create_engine",
    "create_schema",
    "dispose_engines",
    "get_session_factory",
    "lifespan_session",
    "resolve_database_url",
    "KafkaProducerStub",
    "KafkaConsumerStub",
    "hash_password",
    "verify_password",
    "workflow_span",
]
