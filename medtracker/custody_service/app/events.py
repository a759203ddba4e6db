"""Event publishing helpers for the custody service."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from medtracker.common.kafka import KafkaProducerStub

from .clock import ensure_utc
from .models import AuditEvent

_LOGGER = logging.getLogger(__name__)

AUDIT_RECORDED_TOPIC = "custody.audit.recorded.v1"


def _iso(dt: datetime | None) -> str | None:
    value = ensure_utc(dt)
    return value.isoformat() if value is not None else None


def serialize_audit_event(event: AuditEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "serviceId": event.service_id,
        "userId": event.user_id,
        "eventType": event.event_type,
        "entityType": event.entity_type,
        "entityId": event.entity_id,
        "details": event.details,
        "timestamp": _iso(event.timestamp),
    }


class AuditEventPublisher:
    """Publishes committed audit events, keyed by service."""

    def __init__(self, producer: KafkaProducerStub | None, *, topic: str = AUDIT_RECORDED_TOPIC) -> None:
        self._producer = producer
        self.topic = topic

    async def _emit(self, key: str, payload: dict[str, Any]) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": self.topic,
            "occurredAt": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        await self._producer.send(self.topic, envelope, key=key)

    async def audit_recorded(self, events: Iterable[AuditEvent]) -> None:
        for event in events:
            await self._emit(str(event.service_id), {"audit": serialize_audit_event(event)})
