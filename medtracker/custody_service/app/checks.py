"""Location compliance checks.

A sealed location is checked as a unit: one seal-intact confirmation stamps
every active item inside it. An unsealed location is checked item by item
and only completes once every in-stock item has been verified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .domain import ActorContext, AuditEventType, ItemStatus
from .errors import ConcurrencyConflict, PreconditionFailed, Reason, ValidationFailed, WorkflowStateError
from .models import CheckLine, CheckSession, Location
from .repository import normalise_code
from .unit_of_work import UnitOfWork
from .workflows import CustodyWorkflow, WorkflowStep

if TYPE_CHECKING:
    from .services import CustodyService

_LOGGER = logging.getLogger(__name__)


@dataclass
class PendingLine:
    item_id: int
    code: str
    catalog_id: int
    verified: bool = False
    notes: str = ""


@dataclass(frozen=True)
class CheckOutcome:
    session: CheckSession
    stamped_item_ids: list[int] = field(default_factory=list)


def _same_seal(expected: str, given: str) -> bool:
    return expected.strip().upper() == given.strip().upper()


class CheckSessionWorkflow(CustodyWorkflow):
    operation = "check_session"

    def __init__(self, service: CustodyService, actor: ActorContext) -> None:
        super().__init__(service, actor)
        self.location_id: int | None = None
        self.sealed = False
        self.seal_id = ""
        self.seal_verified = False
        self.matched_seal_id: str | None = None
        self.lines: dict[int, PendingLine] = {}
        self.started_at: datetime | None = None
        self.notes = ""

    async def start(self, location_id: int) -> list[PendingLine]:
        """Open the check; for unsealed locations returns the items to verify."""

        self._expect(WorkflowStep.LOOKUP)
        async with self.service.reading() as repository:
            location = await repository.get_location(location_id)
            if location is None or location.service_id != self.actor.service_id:
                raise PreconditionFailed(Reason.NOT_FOUND, f"Location {location_id} not found.")
            if not location.is_active:
                raise PreconditionFailed(Reason.NOT_ACTIVE, f"Location {location.name} is inactive.")
            items = (
                []
                if location.sealed
                else await repository.list_items(
                    self.actor.service_id,
                    location_id=location.id,
                    status=ItemStatus.IN_STOCK.value,
                )
            )
        self.location_id = location.id
        self.sealed = location.sealed
        self.seal_id = location.seal_id
        self.lines = {
            item.id: PendingLine(item_id=item.id, code=item.code, catalog_id=item.catalog_id) for item in items
        }
        self.started_at = self.service.clock()
        self.step = WorkflowStep.DETAIL
        return list(self.lines.values())

    def confirm_seal(self, *, intact: bool, seal_id: str | None = None, notes: str = "") -> None:
        self._expect(WorkflowStep.DETAIL)
        if not self.sealed:
            raise PreconditionFailed(Reason.NOT_SEALED, "This location is checked item by item.")
        if not intact:
            raise PreconditionFailed(
                Reason.SEAL_NOT_VERIFIED,
                "A broken seal cannot complete a check; open a discrepancy instead.",
            )
        if seal_id and self.seal_id and not _same_seal(self.seal_id, seal_id):
            raise PreconditionFailed(Reason.SEAL_MISMATCH, f"Seal {seal_id} does not match the location seal.")
        self.seal_verified = True
        self.matched_seal_id = seal_id.strip() if seal_id else None
        self.notes = notes.strip()

    def verify_item(self, code: str, *, verified: bool = True, notes: str = "") -> PendingLine:
        self._expect(WorkflowStep.DETAIL)
        if self.sealed:
            raise WorkflowStateError("Sealed locations are verified through the seal, not per item.")
        normalised = normalise_code(code)
        line = next((line for line in self.lines.values() if line.code.upper() == normalised), None)
        if line is None:
            raise PreconditionFailed(Reason.NOT_FOUND, f"Item {code} is not in stock at this location.")
        line.verified = verified
        line.notes = notes.strip()
        return line

    @property
    def remaining(self) -> list[PendingLine]:
        return [line for line in self.lines.values() if not line.verified]

    def review(self) -> dict[str, Any]:
        if self.step is WorkflowStep.DETAIL:
            if self.sealed:
                if not self.seal_verified:
                    raise PreconditionFailed(Reason.SEAL_NOT_VERIFIED, "Confirm the seal before completing.")
            else:
                if not self.lines:
                    raise ValidationFailed("A location with no in-stock items cannot complete an item check.")
                if self.remaining:
                    raise ValidationFailed(f"{len(self.remaining)} item(s) still need verification.")
            self.step = WorkflowStep.REVIEW
        return super().review()

    def _summary(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "location_id": self.location_id,
            "sealed": self.sealed,
            "seal_verified": self.seal_verified,
            "items": len(self.lines),
        }

    async def commit(self) -> CheckOutcome:
        self._expect(WorkflowStep.REVIEW)
        result = await self.service.run_commit(
            self.operation, self.actor, self._apply, location_id=self.location_id
        )
        self.step = WorkflowStep.COMMITTED
        return result

    def cancel(self) -> None:
        super().cancel()
        self.lines = {}
        self.seal_verified = False

    async def _live_location(self, uow: UnitOfWork) -> Location:
        location = await uow.repository.get_location(self.location_id)
        if location is None or not location.is_active:
            raise ConcurrencyConflict("The location is no longer available.")
        if location.sealed != self.sealed:
            raise ConcurrencyConflict("The location seal mode changed since the check started.")
        return location

    async def _apply(self, uow: UnitOfWork) -> CheckOutcome:
        location = await self._live_location(uow)
        if self.sealed:
            if self.matched_seal_id and not _same_seal(location.seal_id, self.matched_seal_id):
                raise ConcurrencyConflict("The location seal was replaced since the check started.")
            items = await uow.repository.list_items(self.actor.service_id, location_id=location.id)
        else:
            items = await uow.repository.list_items(
                self.actor.service_id, location_id=location.id, status=ItemStatus.IN_STOCK.value
            )
            if {item.id for item in items} != set(self.lines):
                raise ConcurrencyConflict("The items at this location changed since the check started.")

        for item in items:
            item.last_checked_at = uow.now
        session = await uow.repository.add(
            CheckSession(
                service_id=location.service_id,
                location_id=location.id,
                checked_by=self.actor.user_id,
                seal_verified=self.sealed,
                started_at=self.started_at or uow.now,
                completed_at=uow.now,
                notes=self.notes,
                lines=[
                    CheckLine(item_id=item.id, verified=self.lines[item.id].verified, notes=self.lines[item.id].notes)
                    for item in items
                    if not self.sealed
                ],
            )
        )
        await uow.audit(
            AuditEventType.CHECK_SESSION_STARTED,
            "CheckSession",
            session.id,
            {"locationId": location.id, "sealed": self.sealed},
        )
        if self.sealed:
            await uow.audit(
                AuditEventType.CHECK_SEAL_VERIFIED,
                "Location",
                location.id,
                {"checkSessionId": session.id, "sealId": location.seal_id, "itemsStamped": len(items)},
            )
        else:
            for item in items:
                await uow.audit(
                    AuditEventType.CHECK_ITEM_VERIFIED,
                    "InventoryItem",
                    item.id,
                    {"checkSessionId": session.id, "code": item.code},
                )
        await uow.audit(
            AuditEventType.CHECK_SESSION_COMPLETED,
            "CheckSession",
            session.id,
            {"locationId": location.id, "itemsStamped": len(items)},
        )
        _LOGGER.info("Check of location %s stamped %d item(s)", location.id, len(items))
        return CheckOutcome(session=session, stamped_item_ids=[item.id for item in items])
