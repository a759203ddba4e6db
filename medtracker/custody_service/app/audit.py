"""Append-only audit ledger.

A ledger is opened per unit of work. Each :meth:`AuditLedger.record` call
adds one row to the caller's transaction; the rows become visible (and are
published) only if that transaction commits.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock, ensure_utc, utcnow
from .domain import AuditEventType
from .models import AuditEvent
from .repository import CustodyRepository

_LOGGER = logging.getLogger(__name__)

MAX_DETAILS_LENGTH = 4000
_TRUNCATION_MARK = "..."


def normalise_details(details: str | Mapping[str, Any] | None) -> str:
    if details is None:
        return ""
    if isinstance(details, Mapping):
        text = json.dumps(dict(details), default=str, sort_keys=True)
    else:
        text = str(details)
    if len(text) > MAX_DETAILS_LENGTH:
        _LOGGER.warning("Audit details truncated from %d characters", len(text))
        text = text[: MAX_DETAILS_LENGTH - len(_TRUNCATION_MARK)] + _TRUNCATION_MARK
    return text


class AuditLedger:
    """Writes audit rows in the session it was opened with."""

    def __init__(self, session: AsyncSession, *, clock: Clock = utcnow) -> None:
        self.session = session
        self.clock = clock
        self.recorded: list[AuditEvent] = []

    async def record(
        self,
        service_id: int,
        user_id: int,
        event_type: AuditEventType | str,
        entity_type: str,
        entity_id: int | None = None,
        details: str | Mapping[str, Any] | None = None,
    ) -> AuditEvent:
        event_name = event_type.value if isinstance(event_type, AuditEventType) else str(event_type)
        entry = AuditEvent(
            service_id=service_id,
            user_id=user_id,
            event_type=event_name,
            entity_type=entity_type or "Unknown",
            entity_id=entity_id or 0,
            details=normalise_details(details),
            timestamp=ensure_utc(self.clock()),
        )
        self.session.add(entry)
        await self.session.flush()
        self.recorded.append(entry)
        _LOGGER.debug("Audit %s %s:%s", event_name, entry.entity_type, entry.entity_id)
        return entry


async def query(
    session: AsyncSession,
    service_id: int,
    *,
    event_type: AuditEventType | str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int | None = None,
) -> list[AuditEvent]:
    """Audit events of one service, newest first."""

    if isinstance(event_type, AuditEventType):
        event_type = event_type.value
    return await CustodyRepository(session).query_audit(
        service_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        since=ensure_utc(since),
        until=ensure_utc(until),
        limit=limit,
    )
