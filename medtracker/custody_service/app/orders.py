"""Purchase orders and the receipt workflow that turns them into inventory."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .codes import generate_unique_code
from .domain import ActorContext, AuditEventType, ItemStatus, OrderStatus
from .errors import ConcurrencyConflict, PreconditionFailed, Reason, ValidationFailed
from .models import InventoryItem, MedicationLot, Order, OrderLine
from .unit_of_work import UnitOfWork
from .workflows import CustodyWorkflow, WorkflowStep

if TYPE_CHECKING:
    from .services import CustodyService

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLineInput:
    catalog_id: int
    quantity_ordered: int


@dataclass(frozen=True)
class LineReceipt:
    line_id: int
    quantity_received: int
    location_id: int | None = None
    lot_number: str | None = None
    serial_number: str | None = None
    expiration_date: datetime | None = None


@dataclass(frozen=True)
class ReceiptOutcome:
    order: Order
    items: list[InventoryItem] = field(default_factory=list)
    lots: list[MedicationLot] = field(default_factory=list)


def receipt_status(lines: Sequence[OrderLine]) -> OrderStatus:
    """Received only when every line got exactly what was ordered."""

    if all(line.quantity_received == line.quantity_ordered for line in lines):
        return OrderStatus.RECEIVED
    return OrderStatus.PARTIALLY_RECEIVED


async def create_order(
    uow: UnitOfWork,
    *,
    vendor_id: int,
    lines: Sequence[OrderLineInput],
    notes: str = "",
    submit: bool = True,
) -> Order:
    if not lines:
        raise ValidationFailed("An order needs at least one line.", field="lines")
    for line in lines:
        if line.quantity_ordered <= 0:
            raise ValidationFailed("Ordered quantities must be greater than zero.", field="quantity_ordered")

    service_id = uow.actor.service_id
    vendor = await uow.repository.get_vendor(vendor_id)
    if vendor is None or vendor.service_id != service_id:
        raise PreconditionFailed(Reason.NOT_FOUND, f"Vendor {vendor_id} not found.")
    if not vendor.is_active:
        raise PreconditionFailed(Reason.NOT_ACTIVE, f"Vendor {vendor.name} is inactive.")
    catalogs = await uow.repository.catalogs_by_id(line.catalog_id for line in lines)
    for line in lines:
        catalog = catalogs.get(line.catalog_id)
        if catalog is None or catalog.service_id != service_id:
            raise PreconditionFailed(Reason.NOT_FOUND, f"Catalog entry {line.catalog_id} not found.")

    status = OrderStatus.SUBMITTED if submit else OrderStatus.DRAFT
    order = await uow.repository.add(
        Order(
            service_id=service_id,
            vendor_id=vendor.id,
            status=status.value,
            order_date=uow.now,
            notes=notes.strip(),
            created_by=uow.actor.user_id,
            created_at=uow.now,
            lines=[
                OrderLine(catalog_id=line.catalog_id, quantity_ordered=line.quantity_ordered, quantity_received=0)
                for line in lines
            ],
        )
    )
    await uow.audit(
        AuditEventType.ORDER_CREATED,
        "Order",
        order.id,
        {"vendorId": vendor.id, "status": status.value, "lines": len(lines)},
    )
    return order


async def submit_order(uow: UnitOfWork, order_id: int) -> Order:
    order = await uow.repository.get_order(order_id)
    if order is None or order.service_id != uow.actor.service_id:
        raise PreconditionFailed(Reason.NOT_FOUND, f"Order {order_id} not found.")
    if order.status != OrderStatus.DRAFT.value:
        raise PreconditionFailed(Reason.ORDER_NOT_DRAFT, f"Order {order_id} is {order.status}.")
    order.status = OrderStatus.SUBMITTED.value
    await uow.repository.flush()
    await uow.audit(AuditEventType.ORDER_SUBMITTED, "Order", order.id, {"status": order.status})
    return order


class OrderReceiptWorkflow(CustodyWorkflow):
    operation = "order_receipt"

    def __init__(self, service: CustodyService, actor: ActorContext) -> None:
        super().__init__(service, actor)
        self.order_id: int | None = None
        self.ordered: dict[int, int] = {}
        self.controlled_lines: set[int] = set()
        self.receipts: dict[int, LineReceipt] = {}

    async def lookup(self, order_id: int) -> Order:
        self._expect(WorkflowStep.LOOKUP)
        async with self.service.reading() as repository:
            order = await repository.get_order(order_id)
            if order is None or order.service_id != self.actor.service_id:
                raise PreconditionFailed(Reason.NOT_FOUND, f"Order {order_id} not found.")
            if order.status != OrderStatus.SUBMITTED.value:
                raise PreconditionFailed(
                    Reason.ORDER_NOT_RECEIVABLE,
                    f"Order {order_id} is {order.status}; only submitted orders can be received.",
                )
            catalogs = await repository.catalogs_by_id(line.catalog_id for line in order.lines)
        self.order_id = order.id
        self.ordered = {line.id: line.quantity_ordered for line in order.lines}
        self.controlled_lines = {
            line.id
            for line in order.lines
            if line.catalog_id in catalogs and catalogs[line.catalog_id].is_controlled
        }
        self.step = WorkflowStep.DETAIL
        return order

    def receive_line(
        self,
        line_id: int,
        *,
        quantity_received: int,
        location_id: int | None = None,
        lot_number: str | None = None,
        serial_number: str | None = None,
        expiration_date: datetime | None = None,
    ) -> LineReceipt:
        self._expect(WorkflowStep.DETAIL)
        if line_id not in self.ordered:
            raise ValidationFailed(f"Line {line_id} is not part of this order.", field="line_id")
        if quantity_received is None or quantity_received < 0:
            raise ValidationFailed("Received quantity cannot be negative.", field="quantity_received")
        if quantity_received > 0 and location_id is None:
            raise ValidationFailed("A location is required for received units.", field="location_id")
        receipt = LineReceipt(
            line_id=line_id,
            quantity_received=quantity_received,
            location_id=location_id,
            lot_number=(lot_number or "").strip() or None,
            serial_number=(serial_number or "").strip() or None,
            expiration_date=expiration_date,
        )
        self.receipts[line_id] = receipt
        return receipt

    def review(self) -> dict[str, Any]:
        if self.step is WorkflowStep.DETAIL:
            if not any(receipt.quantity_received for receipt in self.receipts.values()):
                raise ValidationFailed("Nothing has been received.")
            self.step = WorkflowStep.REVIEW
        return super().review()

    def _summary(self) -> dict[str, Any]:
        complete = all(
            line_id in self.receipts and self.receipts[line_id].quantity_received == quantity
            for line_id, quantity in self.ordered.items()
        )
        return {
            "operation": self.operation,
            "order_id": self.order_id,
            "units": sum(receipt.quantity_received for receipt in self.receipts.values()),
            "status": (OrderStatus.RECEIVED if complete else OrderStatus.PARTIALLY_RECEIVED).value,
        }

    async def commit(self) -> ReceiptOutcome:
        self._expect(WorkflowStep.REVIEW)
        result = await self.service.run_commit(self.operation, self.actor, self._apply, order_id=self.order_id)
        self.step = WorkflowStep.COMMITTED
        return result

    async def _apply(self, uow: UnitOfWork) -> ReceiptOutcome:
        order = await uow.repository.get_order(self.order_id)
        if order is None or order.status != OrderStatus.SUBMITTED.value:
            raise ConcurrencyConflict(f"Order {self.order_id} is no longer awaiting receipt.")
        catalogs = await uow.repository.catalogs_by_id(line.catalog_id for line in order.lines)
        taken = await uow.repository.existing_codes(order.service_id)

        created: list[InventoryItem] = []
        lots: list[MedicationLot] = []
        for line in order.lines:
            receipt = self.receipts.get(line.id)
            line.quantity_received = receipt.quantity_received if receipt is not None else 0
            if receipt is None or receipt.quantity_received == 0:
                continue
            location = await uow.repository.get_location(receipt.location_id)
            if location is None or location.service_id != order.service_id:
                raise PreconditionFailed(Reason.NOT_FOUND, f"Location {receipt.location_id} not found.")
            if not location.is_active:
                raise PreconditionFailed(Reason.NOT_ACTIVE, f"Location {location.name} is inactive.")

            catalog = catalogs.get(line.catalog_id)
            lot: MedicationLot | None = None
            if catalog is not None and catalog.is_controlled and receipt.lot_number:
                lot_code = generate_unique_code(taken)
                lot = await uow.repository.add(
                    MedicationLot(
                        service_id=order.service_id,
                        catalog_id=line.catalog_id,
                        lot_number=receipt.lot_number,
                        serial_number=receipt.serial_number or f"SN-{lot_code}",
                        expiration_date=receipt.expiration_date,
                        code=lot_code,
                        created_at=uow.now,
                    )
                )
                lots.append(lot)

            units = [
                InventoryItem(
                    service_id=order.service_id,
                    catalog_id=line.catalog_id,
                    lot_id=lot.id if lot is not None else None,
                    location_id=location.id,
                    status=ItemStatus.IN_STOCK.value,
                    quantity=1,
                    code=generate_unique_code(taken),
                    notes=f"Received on order {order.id}",
                    is_active=True,
                    last_checked_at=uow.now,
                    created_at=uow.now,
                )
                for _ in range(receipt.quantity_received)
            ]
            await uow.repository.add_all(units)
            created.extend(units)
            for unit in units:
                await uow.audit(
                    AuditEventType.ITEM_CREATED,
                    "InventoryItem",
                    unit.id,
                    {"orderId": order.id, "orderLineId": line.id, "code": unit.code, "lotId": unit.lot_id},
                )
            await uow.audit(
                AuditEventType.ORDER_LINE_RECEIVED,
                "OrderLine",
                line.id,
                {"orderId": order.id, "ordered": line.quantity_ordered, "received": line.quantity_received},
            )

        order.status = receipt_status(order.lines).value
        await uow.repository.flush()
        await uow.audit(
            AuditEventType.ORDER_RECEIVED,
            "Order",
            order.id,
            {"status": order.status, "unitsCreated": len(created)},
        )
        _LOGGER.info("Order %s received as %s (%d units)", order.id, order.status, len(created))
        return ReceiptOutcome(order=order, items=created, lots=lots)
