"""One transaction per workflow commit, with the ledger opened on it."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from medtracker.common import lifespan_session

from .audit import AuditLedger
from .clock import Clock, ensure_utc
from .domain import ActorContext, AuditEventType
from .errors import ConcurrencyConflict, PersistenceFailure
from .models import AuditEvent
from .repository import CustodyRepository
from .witness import WitnessVerifier

_LOGGER = logging.getLogger(__name__)


@dataclass
class UnitOfWork:
    actor: ActorContext
    session: AsyncSession
    repository: CustodyRepository
    ledger: AuditLedger
    witnesses: WitnessVerifier
    now: datetime

    async def audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: int | None,
        details: str | Mapping[str, Any] | None = None,
        *,
        service_id: int | None = None,
    ) -> AuditEvent:
        return await self.ledger.record(
            self.actor.service_id if service_id is None else service_id,
            self.actor.user_id,
            event_type,
            entity_type,
            entity_id,
            details,
        )


@asynccontextmanager
async def open_unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
    actor: ActorContext,
    *,
    clock: Clock,
) -> AsyncIterator[UnitOfWork]:
    """Commit everything written in the block, or nothing.

    Storage errors are translated: a stale row version becomes
    :class:`ConcurrencyConflict`, anything else from SQLAlchemy becomes
    :class:`PersistenceFailure`.
    """

    try:
        async with lifespan_session(session_factory) as session:
            repository = CustodyRepository(session)
            yield UnitOfWork(
                actor=actor,
                session=session,
                repository=repository,
                ledger=AuditLedger(session, clock=clock),
                witnesses=WitnessVerifier(repository),
                now=ensure_utc(clock()),
            )
    except StaleDataError as exc:
        raise ConcurrencyConflict("The record was changed by someone else; refresh and retry.") from exc
    except SQLAlchemyError as exc:
        _LOGGER.exception("Unit of work failed for %s", actor.log_label)
        raise PersistenceFailure("The custody store rejected the operation.") from exc


@asynccontextmanager
async def open_read_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[CustodyRepository]:
    """Read-only access; nothing done here is ever committed."""

    try:
        async with session_factory() as session:
            yield CustodyRepository(session)
    except SQLAlchemyError as exc:
        raise PersistenceFailure("The custody store could not be read.") from exc
