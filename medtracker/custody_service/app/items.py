"""Catalog entries and item maintenance outside the custody workflows."""

from __future__ import annotations

from .domain import AuditEventType, Role
from .errors import PreconditionFailed, Reason, ValidationFailed
from .models import InventoryItem, ItemCatalog
from .unit_of_work import UnitOfWork
from .workflows import require_text


async def create_catalog(
    uow: UnitOfWork,
    *,
    name: str,
    category: str = "",
    is_controlled: bool = False,
    unit: str = "unit",
    default_par_level: int = 0,
) -> ItemCatalog:
    uow.actor.require(Role.SUPERVISOR)
    if default_par_level < 0:
        raise ValidationFailed("Par level cannot be negative.", field="default_par_level")
    catalog = await uow.repository.add(
        ItemCatalog(
            service_id=uow.actor.service_id,
            name=require_text(name, "name"),
            category=category.strip(),
            is_controlled=is_controlled,
            unit=require_text(unit, "unit"),
            default_par_level=default_par_level,
            is_active=True,
        )
    )
    await uow.audit(
        AuditEventType.ITEM_CREATED,
        "ItemCatalog",
        catalog.id,
        {"name": catalog.name, "isControlled": is_controlled},
    )
    return catalog


async def _item_in_service(uow: UnitOfWork, item_id: int) -> InventoryItem:
    item = await uow.repository.get_item(item_id)
    if item is None or item.service_id != uow.actor.service_id:
        raise PreconditionFailed(Reason.NOT_FOUND, f"Item {item_id} not found.")
    return item


async def update_item(
    uow: UnitOfWork,
    item_id: int,
    *,
    notes: str | None = None,
    quantity: float | None = None,
) -> InventoryItem:
    """Adjust notes or counted quantity. Status is never touched here."""

    uow.actor.require(Role.SUPERVISOR)
    if quantity is not None and quantity < 0:
        raise ValidationFailed("Quantity cannot be negative.", field="quantity")
    item = await _item_in_service(uow, item_id)
    if not item.is_active:
        raise PreconditionFailed(Reason.NOT_ACTIVE, f"Item {item.code} is inactive.")
    changes: dict[str, object] = {}
    if notes is not None and notes != item.notes:
        item.notes = notes
        changes["notes"] = notes
    if quantity is not None and quantity != item.quantity:
        changes["quantity"] = {"from": item.quantity, "to": quantity}
        item.quantity = quantity
    if not changes:
        raise ValidationFailed("Nothing to update.")
    await uow.repository.flush()
    await uow.audit(AuditEventType.ITEM_UPDATED, "InventoryItem", item.id, changes)
    return item


async def deactivate_item(uow: UnitOfWork, item_id: int, *, reason: str = "") -> InventoryItem:
    uow.actor.require(Role.SUPERVISOR)
    item = await _item_in_service(uow, item_id)
    if not item.is_active:
        raise PreconditionFailed(Reason.NOT_ACTIVE, f"Item {item.code} is already inactive.")
    item.is_active = False
    await uow.repository.flush()
    await uow.audit(
        AuditEventType.ITEM_DEACTIVATED,
        "InventoryItem",
        item.id,
        {"code": item.code, "reason": reason.strip()},
    )
    return item
