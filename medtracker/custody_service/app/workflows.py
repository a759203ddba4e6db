"""Item custody workflows: administer, waste or correct, transfer, expired exchange.

Each workflow walks Lookup -> Detail -> (Witness) -> Review -> Commit.
Everything before :meth:`CustodyWorkflow.commit` is held on the instance;
only the commit opens a transaction, and it re-reads every precondition
that lookup established instead of trusting the values captured then.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from .compliance import days_until, is_expiring
from .domain import (
    CORRECTABLE_STATUSES,
    ActorContext,
    AuditEventType,
    InventoryItemRef,
    ItemStatus,
    WasteRecordRef,
    can_transition,
    ensure_transition,
)
from .errors import (
    ConcurrencyConflict,
    PreconditionFailed,
    Reason,
    ValidationFailed,
    WorkflowStateError,
)
from .models import (
    AdministrationRecord,
    InventoryItem,
    MedicationLot,
    Transfer,
    WasteRecord,
    WitnessSignature,
)
from .repository import CustodyRepository, normalise_code
from .unit_of_work import UnitOfWork
from .witness import WitnessResult, WitnessVerifier

if TYPE_CHECKING:
    from .services import CustodyService

_LOGGER = logging.getLogger(__name__)


class WorkflowStep(str, Enum):
    LOOKUP = "Lookup"
    DETAIL = "Detail"
    WITNESS = "Witness"
    REVIEW = "Review"
    COMMITTED = "Committed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class ItemSnapshot:
    """What lookup saw. Commit compares the live row against this."""

    item_id: int
    code: str
    status: ItemStatus
    quantity: float
    location_id: int
    catalog_id: int
    catalog_name: str
    unit: str
    is_controlled: bool
    lot_id: int | None
    lot_number: str | None
    expiration_date: datetime | None


def require_code(code: str | None) -> str:
    if not code or not code.strip():
        raise ValidationFailed("An item code is required.", field="code")
    normalised = normalise_code(code)
    if normalised is None:
        raise ValidationFailed("Item codes are exactly 6 characters.", field="code")
    return normalised


def require_text(value: str | None, field: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationFailed(f"{field} is required.", field=field)
    return cleaned


def append_note(existing: str, note: str) -> str:
    return f"{existing}\n{note}" if existing else note


class CustodyWorkflow:
    """Shared step bookkeeping for every custody workflow."""

    operation: ClassVar[str] = "workflow"

    def __init__(self, service: CustodyService, actor: ActorContext) -> None:
        self.service = service
        self.actor = actor
        self.step = WorkflowStep.LOOKUP
        self.witness_result: WitnessResult | None = None
        self.item: ItemSnapshot | None = None

    def _expect(self, *steps: WorkflowStep) -> None:
        if self.step not in steps:
            expected = ", ".join(step.value for step in steps)
            raise WorkflowStateError(
                f"{self.operation} is at {self.step.value}; this step needs {expected}."
            )

    def _require_item(self) -> ItemSnapshot:
        if self.item is None:
            raise WorkflowStateError(f"{self.operation} has no item; run lookup first.")
        return self.item

    async def _lookup_item(self, repository: CustodyRepository, code: str | None) -> InventoryItem:
        normalised = require_code(code)
        item = await repository.find_active_item_by_code(self.actor.service_id, normalised)
        if item is None:
            raise PreconditionFailed(Reason.NOT_FOUND, f"No active item with code {normalised}.")
        return item

    async def _snapshot(self, repository: CustodyRepository, item: InventoryItem) -> ItemSnapshot:
        catalog = await repository.get_catalog(item.catalog_id)
        lot = await repository.get_lot(item.lot_id)
        return ItemSnapshot(
            item_id=item.id,
            code=item.code,
            status=ItemStatus(item.status),
            quantity=item.quantity,
            location_id=item.location_id,
            catalog_id=item.catalog_id,
            catalog_name=catalog.name if catalog is not None else "Unknown",
            unit=catalog.unit if catalog is not None else "unit",
            is_controlled=bool(catalog and catalog.is_controlled),
            lot_id=item.lot_id,
            lot_number=lot.lot_number if lot is not None else None,
            expiration_date=lot.expiration_date if lot is not None else None,
        )

    async def witness(self, email: str | None, password: str | None) -> WitnessResult:
        self._expect(WorkflowStep.WITNESS)
        async with self.service.reading() as repository:
            result = await WitnessVerifier(repository).verify(
                email, password, self.actor.user_id, self.actor.service_id
            )
        self.witness_result = result
        self.step = WorkflowStep.REVIEW
        return result

    def review(self) -> dict[str, Any]:
        self._expect(WorkflowStep.REVIEW)
        return self._summary()

    def _summary(self) -> dict[str, Any]:
        return {"operation": self.operation, "item": self.item}

    def cancel(self) -> None:
        """Abandon the workflow. Nothing was written, so nothing is undone."""

        if self.step is WorkflowStep.COMMITTED:
            raise WorkflowStateError(f"{self.operation} is already committed.")
        self.step = WorkflowStep.CANCELLED
        self.witness_result = None
        self.item = None

    async def commit(self):
        self._expect(WorkflowStep.REVIEW)
        result = await self.service.run_commit(
            self.operation,
            self.actor,
            self._apply,
            item_id=self.item.item_id if self.item is not None else None,
        )
        self.step = WorkflowStep.COMMITTED
        return result

    async def _apply(self, uow: UnitOfWork):
        raise NotImplementedError

    async def _live_item(self, uow: UnitOfWork) -> InventoryItem:
        self._require_item()
        item = await uow.repository.get_item(self.item.item_id)
        if item is None or item.service_id != self.actor.service_id:
            raise ConcurrencyConflict(f"Item {self.item.code} no longer exists.")
        if not item.is_active:
            raise ConcurrencyConflict(f"Item {self.item.code} was deactivated.")
        return item

    async def _confirm_witness(self, uow: UnitOfWork) -> WitnessResult:
        if self.witness_result is None:
            raise PreconditionFailed(Reason.WITNESS_REQUIRED, "A verified witness is required.")
        await uow.witnesses.confirm(self.witness_result, self.actor.user_id, self.actor.service_id)
        return self.witness_result


@dataclass(frozen=True)
class AdministrationOutcome:
    item: InventoryItem
    administration: AdministrationRecord
    waste: WasteRecord | None
    signature: WitnessSignature | None


class AdministerWorkflow(CustodyWorkflow):
    """Controlled-substance administration.

    A dose smaller than the unit leaves a remainder that must be wasted on
    the spot, which makes the witness mandatory.
    """

    operation = "administer"

    def __init__(self, service: CustodyService, actor: ActorContext) -> None:
        super().__init__(service, actor)
        self.patient_id = ""
        self.dose_given = 0.0
        self.dose_unit = ""
        self.route = ""
        self.notes = ""
        self.waste_method = ""
        self.dose_wasted = 0.0

    async def lookup(self, code: str | None) -> ItemSnapshot:
        self._expect(WorkflowStep.LOOKUP)
        async with self.service.reading() as repository:
            item = await self._lookup_item(repository, code)
            snapshot = await self._snapshot(repository, item)
        if snapshot.status is not ItemStatus.IN_STOCK:
            raise PreconditionFailed(Reason.NOT_IN_STOCK, f"Item {snapshot.code} is {snapshot.status.value}.")
        if not snapshot.is_controlled:
            raise PreconditionFailed(
                Reason.NOT_CONTROLLED,
                f"{snapshot.catalog_name} is not a controlled substance.",
            )
        self.item = snapshot
        self.step = WorkflowStep.DETAIL
        return snapshot

    def detail(
        self,
        *,
        patient_id: str,
        dose_given: float,
        route: str,
        dose_unit: str | None = None,
        notes: str = "",
        waste_method: str = "",
    ) -> float:
        """Record the dose and return the computed waste remainder."""

        self._expect(WorkflowStep.DETAIL)
        self._require_item()
        self.patient_id = require_text(patient_id, "patient_id")
        self.route = require_text(route, "route")
        if dose_given is None or dose_given <= 0:
            raise ValidationFailed("Dose given must be greater than zero.", field="dose_given")
        if dose_given > self.item.quantity:
            raise ValidationFailed(
                f"Dose given cannot exceed the {self.item.quantity} {self.item.unit} in the unit.",
                field="dose_given",
            )
        self.dose_given = float(dose_given)
        self.dose_unit = (dose_unit or self.item.unit).strip()
        self.notes = notes.strip()
        self.waste_method = waste_method.strip()
        self.dose_wasted = max(0.0, self.item.quantity - self.dose_given)
        self.witness_result = None
        self.step = WorkflowStep.WITNESS if self.dose_wasted > 0 else WorkflowStep.REVIEW
        return self.dose_wasted

    def _summary(self) -> dict[str, Any]:
        return {
            **super()._summary(),
            "patient_id": self.patient_id,
            "dose_given": self.dose_given,
            "dose_unit": self.dose_unit,
            "dose_wasted": self.dose_wasted,
            "route": self.route,
            "witness": self.witness_result,
        }

    async def _apply(self, uow: UnitOfWork) -> AdministrationOutcome:
        self._require_item()
        item = await self._live_item(uow)
        if item.status != ItemStatus.IN_STOCK.value:
            raise ConcurrencyConflict(f"Item {item.code} is no longer in stock.")
        if item.quantity != self.item.quantity:
            raise ConcurrencyConflict(f"Item {item.code} quantity changed since lookup.")
        catalog = await uow.repository.get_catalog(item.catalog_id)
        if catalog is None or not catalog.is_controlled:
            raise ConcurrencyConflict(f"Item {item.code} is no longer a controlled substance.")

        dose_wasted = max(0.0, item.quantity - self.dose_given)
        witness = await self._confirm_witness(uow) if dose_wasted > 0 else None
        ensure_transition(item.status, ItemStatus.ADMINISTERED)

        record = AdministrationRecord(
            service_id=item.service_id,
            item_id=item.id,
            administered_by=self.actor.user_id,
            patient_id=self.patient_id,
            dose_given=self.dose_given,
            dose_unit=self.dose_unit,
            dose_wasted=dose_wasted,
            route=self.route,
            administered_at=uow.now,
            notes=self.notes,
        )
        uow.session.add(record)
        item.status = ItemStatus.ADMINISTERED.value
        await uow.repository.flush()

        waste: WasteRecord | None = None
        signature: WitnessSignature | None = None
        if witness is not None:
            waste = await uow.repository.add(
                WasteRecord(
                    service_id=item.service_id,
                    administration_id=record.id,
                    item_id=item.id,
                    amount_wasted=dose_wasted,
                    wasted_by=self.actor.user_id,
                    wasted_at=uow.now,
                    method=self.waste_method or "Administration remainder",
                    notes=self.notes,
                )
            )
            signature = await uow.repository.add(
                WitnessSignature.for_subject(
                    WasteRecordRef(waste.id),
                    witness_user_id=witness.user_id,
                    witness_email=witness.email,
                    witnessed_at=uow.now,
                )
            )

        await uow.audit(
            AuditEventType.ITEM_ADMINISTERED,
            "InventoryItem",
            item.id,
            {
                "administrationId": record.id,
                "patientId": self.patient_id,
                "doseGiven": self.dose_given,
                "doseUnit": self.dose_unit,
                "doseWasted": dose_wasted,
                "route": self.route,
            },
        )
        if waste is not None and signature is not None:
            await uow.audit(
                AuditEventType.ITEM_WASTED,
                "InventoryItem",
                item.id,
                {"wasteRecordId": waste.id, "amount": dose_wasted, "method": waste.method},
            )
            await uow.audit(
                AuditEventType.WASTE_WITNESSED,
                "WasteRecord",
                waste.id,
                {"witnessUserId": signature.witness_user_id, "witnessEmail": signature.witness_email},
            )
        _LOGGER.info("Item %s administered (wasted %s)", item.code, dose_wasted)
        return AdministrationOutcome(item=item, administration=record, waste=waste, signature=signature)


class WasteMode(str, Enum):
    WASTE = "Waste"
    CORRECTION = "Correction"


@dataclass(frozen=True)
class WasteOutcome:
    item: InventoryItem
    mode: WasteMode
    waste: WasteRecord | None
    signature: WitnessSignature
    previous_status: ItemStatus


class WasteCorrectionWorkflow(CustodyWorkflow):
    """Waste or correction on any active item; both branches are witnessed."""

    operation = "waste_correction"

    def __init__(self, service: CustodyService, actor: ActorContext) -> None:
        super().__init__(service, actor)
        self.mode: WasteMode | None = None
        self.amount = 0.0
        self.method = ""
        self.notes = ""
        self.reason = ""

    async def lookup(self, code: str | None, mode: WasteMode | str) -> ItemSnapshot:
        self._expect(WorkflowStep.LOOKUP)
        try:
            selected = WasteMode(mode)
        except ValueError:
            raise ValidationFailed(f"Unknown mode {mode!r}.", field="mode") from None
        async with self.service.reading() as repository:
            item = await self._lookup_item(repository, code)
            snapshot = await self._snapshot(repository, item)
        if selected is WasteMode.WASTE and not can_transition(snapshot.status, ItemStatus.WASTED):
            raise PreconditionFailed(
                Reason.INVALID_TRANSITION,
                f"Item {snapshot.code} is {snapshot.status.value} and cannot be wasted.",
            )
        self.mode = selected
        self.item = snapshot
        self.step = WorkflowStep.DETAIL
        return snapshot

    def waste_detail(self, *, amount: float, method: str, notes: str = "") -> None:
        self._expect(WorkflowStep.DETAIL)
        if self.mode is not WasteMode.WASTE:
            raise WorkflowStateError("Waste details apply to the waste branch only.")
        snapshot = self._require_item()
        if amount is None or amount <= 0:
            raise ValidationFailed("Waste amount must be greater than zero.", field="amount")
        if amount > snapshot.quantity:
            raise ValidationFailed(
                f"Waste amount cannot exceed the {snapshot.quantity} {snapshot.unit} in the unit.",
                field="amount",
            )
        self.amount = float(amount)
        self.method = require_text(method, "method")
        self.notes = notes.strip()
        self.step = WorkflowStep.WITNESS

    def correction_detail(self, *, reason: str) -> None:
        self._expect(WorkflowStep.DETAIL)
        if self.mode is not WasteMode.CORRECTION:
            raise WorkflowStateError("A correction reason applies to the correction branch only.")
        self.reason = require_text(reason, "reason")
        self.step = WorkflowStep.WITNESS

    def _summary(self) -> dict[str, Any]:
        return {
            **super()._summary(),
            "mode": self.mode,
            "amount": self.amount,
            "method": self.method,
            "reason": self.reason,
            "witness": self.witness_result,
        }

    async def _apply(self, uow: UnitOfWork) -> WasteOutcome:
        self._require_item()
        witness = await self._confirm_witness(uow)
        item = await self._live_item(uow)
        if item.status != self.item.status.value:
            raise ConcurrencyConflict(
                f"Item {item.code} changed from {self.item.status.value} to {item.status} since lookup."
            )
        previous = ItemStatus(item.status)
        if self.mode is WasteMode.WASTE:
            return await self._apply_waste(uow, item, witness, previous)
        return await self._apply_correction(uow, item, witness, previous)

    async def _apply_waste(
        self, uow: UnitOfWork, item: InventoryItem, witness: WitnessResult, previous: ItemStatus
    ) -> WasteOutcome:
        ensure_transition(previous, ItemStatus.WASTED)
        if self.amount > item.quantity:
            raise ConcurrencyConflict(f"Item {item.code} now holds less than the amount being wasted.")
        administration = await uow.repository.latest_administration(item.id)
        item.status = ItemStatus.WASTED.value
        waste = await uow.repository.add(
            WasteRecord(
                service_id=item.service_id,
                administration_id=administration.id if administration is not None else None,
                item_id=item.id,
                amount_wasted=self.amount,
                wasted_by=self.actor.user_id,
                wasted_at=uow.now,
                method=self.method,
                notes=self.notes,
            )
        )
        signature = await uow.repository.add(
            WitnessSignature.for_subject(
                WasteRecordRef(waste.id),
                witness_user_id=witness.user_id,
                witness_email=witness.email,
                witnessed_at=uow.now,
            )
        )
        await uow.audit(
            AuditEventType.ITEM_WASTED,
            "InventoryItem",
            item.id,
            {
                "wasteRecordId": waste.id,
                "amount": self.amount,
                "method": self.method,
                "previousStatus": previous.value,
            },
        )
        await uow.audit(
            AuditEventType.WASTE_WITNESSED,
            "WasteRecord",
            waste.id,
            {"witnessUserId": witness.user_id, "witnessEmail": witness.email},
        )
        _LOGGER.info("Item %s wasted (%s %s)", item.code, self.amount, self.method)
        return WasteOutcome(item=item, mode=WasteMode.WASTE, waste=waste, signature=signature, previous_status=previous)

    async def _apply_correction(
        self, uow: UnitOfWork, item: InventoryItem, witness: WitnessResult, previous: ItemStatus
    ) -> WasteOutcome:
        reverted = previous in CORRECTABLE_STATUSES
        if reverted:
            # The only backward move in the item lifecycle.
            item.status = ItemStatus.IN_STOCK.value
        item.notes = append_note(item.notes, f"Correction: {self.reason}")
        await uow.repository.flush()
        signature = await uow.repository.add(
            WitnessSignature.for_subject(
                InventoryItemRef(item.id),
                witness_user_id=witness.user_id,
                witness_email=witness.email,
                witnessed_at=uow.now,
            )
        )
        await uow.audit(
            AuditEventType.CORRECTION_MADE,
            "InventoryItem",
            item.id,
            {
                "reason": self.reason,
                "previousStatus": previous.value,
                "newStatus": item.status,
                "witnessUserId": witness.user_id,
                "witnessEmail": witness.email,
            },
        )
        _LOGGER.info("Correction on item %s: %s -> %s", item.code, previous.value, item.status)
        return WasteOutcome(
            item=item, mode=WasteMode.CORRECTION, waste=None, signature=signature, previous_status=previous
        )


class TransferWorkflow(CustodyWorkflow):
    operation = "transfer"

    def __init__(self, service: CustodyService, actor: ActorContext) -> None:
        super().__init__(service, actor)
        self.to_location_id: int | None = None
        self.notes = ""

    async def lookup(self, code: str | None) -> ItemSnapshot:
        self._expect(WorkflowStep.LOOKUP)
        async with self.service.reading() as repository:
            item = await self._lookup_item(repository, code)
            snapshot = await self._snapshot(repository, item)
        if snapshot.status is not ItemStatus.IN_STOCK:
            raise PreconditionFailed(Reason.NOT_IN_STOCK, f"Item {snapshot.code} is {snapshot.status.value}.")
        self.item = snapshot
        self.step = WorkflowStep.DETAIL
        return snapshot

    async def detail(self, *, to_location_id: int, notes: str = "") -> None:
        self._expect(WorkflowStep.DETAIL)
        self._require_item()
        if to_location_id == self.item.location_id:
            raise ValidationFailed("Destination must differ from the current location.", field="to_location_id")
        async with self.service.reading() as repository:
            destination = await repository.get_location(to_location_id)
        if destination is None or destination.service_id != self.actor.service_id:
            raise PreconditionFailed(Reason.NOT_FOUND, f"Location {to_location_id} not found.")
        if not destination.is_active:
            raise PreconditionFailed(Reason.NOT_ACTIVE, f"Location {destination.name} is inactive.")
        self.to_location_id = to_location_id
        self.notes = notes.strip()
        self.step = WorkflowStep.REVIEW

    def _summary(self) -> dict[str, Any]:
        return {**super()._summary(), "to_location_id": self.to_location_id, "notes": self.notes}

    async def _apply(self, uow: UnitOfWork) -> Transfer:
        self._require_item()
        if self.to_location_id is None:
            raise WorkflowStateError("transfer has no destination yet.")
        item = await self._live_item(uow)
        if item.status != ItemStatus.IN_STOCK.value:
            raise ConcurrencyConflict(f"Item {item.code} is no longer in stock.")
        if item.location_id != self.item.location_id:
            raise ConcurrencyConflict(f"Item {item.code} was moved since lookup.")
        destination = await uow.repository.get_location(self.to_location_id)
        if destination is None or not destination.is_active or destination.service_id != item.service_id:
            raise ConcurrencyConflict("The destination location is no longer available.")

        from_location_id = item.location_id
        item.location_id = destination.id
        transfer = await uow.repository.add(
            Transfer(
                service_id=item.service_id,
                item_id=item.id,
                from_location_id=from_location_id,
                to_location_id=destination.id,
                transferred_by=self.actor.user_id,
                transferred_at=uow.now,
                notes=self.notes,
            )
        )
        await uow.audit(
            AuditEventType.ITEM_TRANSFERRED,
            "InventoryItem",
            item.id,
            {
                "transferId": transfer.id,
                "fromLocationId": from_location_id,
                "toLocationId": destination.id,
                "notes": self.notes,
            },
        )
        _LOGGER.info("Item %s moved %s -> %s", item.code, from_location_id, destination.id)
        return transfer


@dataclass(frozen=True)
class ExpiringCandidate:
    item: InventoryItem
    lot: MedicationLot
    days_until_expiry: float


class ExpiredExchangeWorkflow(CustodyWorkflow):
    """Retire an expiring unit, optionally naming the unit that replaces it."""

    operation = "expired_exchange"

    def __init__(self, service: CustodyService, actor: ActorContext) -> None:
        super().__init__(service, actor)
        self.notes = ""
        self.replacement_item_id: int | None = None
        self.replacement_code: str | None = None

    @property
    def window_days(self) -> int:
        return self.service.settings.expiry_window_days

    async def candidates(self) -> list[ExpiringCandidate]:
        now = self.service.clock()
        async with self.service.reading() as repository:
            rows = await repository.items_with_lots(self.actor.service_id)
        return [
            ExpiringCandidate(item=item, lot=lot, days_until_expiry=days_until(lot.expiration_date, now))
            for item, lot in rows
            if is_expiring(lot.expiration_date, now, window_days=self.window_days)
        ]

    async def lookup(self, code: str | None) -> ItemSnapshot:
        self._expect(WorkflowStep.LOOKUP)
        async with self.service.reading() as repository:
            item = await self._lookup_item(repository, code)
            snapshot = await self._snapshot(repository, item)
        if snapshot.status is not ItemStatus.IN_STOCK:
            raise PreconditionFailed(Reason.NOT_IN_STOCK, f"Item {snapshot.code} is {snapshot.status.value}.")
        if snapshot.lot_id is None or snapshot.expiration_date is None:
            raise PreconditionFailed(Reason.NO_LOT, f"Item {snapshot.code} has no lot expiration date.")
        if not is_expiring(snapshot.expiration_date, self.service.clock(), window_days=self.window_days):
            raise PreconditionFailed(
                Reason.NOT_EXPIRING,
                f"Item {snapshot.code} does not expire within {self.window_days} days.",
            )
        self.item = snapshot
        self.step = WorkflowStep.DETAIL
        return snapshot

    async def detail(self, *, notes: str = "", replacement_code: str | None = None) -> None:
        self._expect(WorkflowStep.DETAIL)
        self._require_item()
        self.notes = notes.strip()
        self.replacement_item_id = None
        self.replacement_code = None
        if replacement_code:
            async with self.service.reading() as repository:
                replacement = await self._lookup_item(repository, replacement_code)
            if replacement.id == self.item.item_id:
                raise ValidationFailed("An item cannot replace itself.", field="replacement_code")
            if replacement.status != ItemStatus.IN_STOCK.value:
                raise PreconditionFailed(Reason.NOT_IN_STOCK, f"Replacement {replacement.code} is not in stock.")
            self.replacement_item_id = replacement.id
            self.replacement_code = replacement.code
        self.step = WorkflowStep.REVIEW

    def _summary(self) -> dict[str, Any]:
        return {
            **super()._summary(),
            "notes": self.notes,
            "replacement_code": self.replacement_code,
        }

    async def _apply(self, uow: UnitOfWork) -> InventoryItem:
        self._require_item()
        item = await self._live_item(uow)
        if item.status != ItemStatus.IN_STOCK.value:
            raise ConcurrencyConflict(f"Item {item.code} is no longer in stock.")
        lot = await uow.repository.get_lot(item.lot_id)
        if lot is None or not is_expiring(lot.expiration_date, uow.now, window_days=self.window_days):
            raise PreconditionFailed(Reason.NOT_EXPIRING, f"Item {item.code} is not expiring.")
        if self.replacement_item_id is not None:
            replacement = await uow.repository.get_item(self.replacement_item_id)
            if replacement is None or not replacement.is_active or replacement.status != ItemStatus.IN_STOCK.value:
                raise ConcurrencyConflict("The replacement item is no longer in stock.")

        ensure_transition(item.status, ItemStatus.EXPIRED)
        item.status = ItemStatus.EXPIRED.value
        item.replaced_by_item_id = self.replacement_item_id
        if self.notes:
            item.notes = append_note(item.notes, f"Expired exchange: {self.notes}")
        await uow.repository.flush()
        await uow.audit(
            AuditEventType.ITEM_EXPIRED_EXCHANGE,
            "InventoryItem",
            item.id,
            {
                "lotNumber": lot.lot_number,
                "expirationDate": lot.expiration_date,
                "replacementItemId": self.replacement_item_id,
                "replacementCode": self.replacement_code,
                "notes": self.notes,
            },
        )
        _LOGGER.info("Item %s retired as expired", item.code)
        return item
