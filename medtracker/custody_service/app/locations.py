"""Location tree, reconciliation and location administration."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from .compliance import location_status
from .domain import AuditEventType, ComplianceStatus, ItemStatus, ReconciliationStatus, Role
from .errors import PreconditionFailed, Reason, ValidationFailed
from .models import InventoryItem, ItemCatalog, Location, LocationExpectedContent
from .unit_of_work import UnitOfWork
from .workflows import require_text

_LOGGER = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"


@dataclass
class LocationNode:
    location: Location
    children: list[LocationNode] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.location.id


def build_tree(locations: Iterable[Location]) -> list[LocationNode]:
    """Link locations by parent; a node whose parent is absent becomes a root."""

    nodes = {location.id: LocationNode(location) for location in locations}
    roots: list[LocationNode] = []
    for node in nodes.values():
        parent = nodes.get(node.location.parent_id) if node.location.parent_id is not None else None
        if parent is None or parent is node:
            roots.append(node)
        else:
            parent.children.append(node)
    return roots


def ancestors(location_id: int, parents: Mapping[int, int | None]) -> list[int]:
    chain: list[int] = []
    seen = {location_id}
    current = parents.get(location_id)
    while current is not None and current not in seen:
        chain.append(current)
        seen.add(current)
        current = parents.get(current)
    return chain


def would_create_cycle(location_id: int, new_parent_id: int | None, parents: Mapping[int, int | None]) -> bool:
    if new_parent_id is None:
        return False
    if new_parent_id == location_id:
        return True
    return location_id in ancestors(new_parent_id, parents)


@dataclass(frozen=True)
class ReconciliationLine:
    catalog_id: int
    catalog_name: str
    expected_quantity: int
    actual_quantity: float
    status: ReconciliationStatus


def reconcile(
    location: Location | None,
    expected: Sequence[LocationExpectedContent],
    items: Iterable[InventoryItem],
    catalogs: Mapping[int, ItemCatalog],
) -> list[ReconciliationLine]:
    """Compare expected against actual in-stock quantities per catalog entry.

    Read-only. A missing location or catalog entry is reported as Short with
    an unknown name instead of failing.
    """

    totals: dict[int, float] = {}
    if location is not None:
        for item in items:
            if item.location_id != location.id or not item.is_active or item.status != ItemStatus.IN_STOCK.value:
                continue
            totals[item.catalog_id] = totals.get(item.catalog_id, 0) + item.quantity

    lines = []
    for entry in expected:
        catalog = catalogs.get(entry.catalog_id)
        actual = totals.get(entry.catalog_id, 0)
        known = location is not None and catalog is not None
        status = ReconciliationStatus.OK if known and actual >= entry.expected_quantity else ReconciliationStatus.SHORT
        lines.append(
            ReconciliationLine(
                catalog_id=entry.catalog_id,
                catalog_name=catalog.name if catalog is not None else UNKNOWN_NAME,
                expected_quantity=entry.expected_quantity,
                actual_quantity=actual,
                status=status,
            )
        )
    return lines


def summarise_compliance(
    locations: Iterable[Location], items: Sequence[InventoryItem], now: datetime
) -> dict[int, ComplianceStatus]:
    return {location.id: location_status(location, items, now) for location in locations}


async def _location_in_service(uow: UnitOfWork, location_id: int) -> Location:
    location = await uow.repository.get_location(location_id)
    if location is None or location.service_id != uow.actor.service_id:
        raise PreconditionFailed(Reason.NOT_FOUND, f"Location {location_id} not found.")
    return location


async def _check_parent(uow: UnitOfWork, location_id: int | None, parent_id: int | None) -> None:
    if parent_id is None:
        return
    await _location_in_service(uow, parent_id)
    if location_id is None:
        return
    locations = await uow.repository.list_locations(uow.actor.service_id, active_only=False)
    parents = {location.id: location.parent_id for location in locations}
    if would_create_cycle(location_id, parent_id, parents):
        raise PreconditionFailed(
            Reason.LOCATION_CYCLE,
            f"Location {parent_id} is {location_id} itself or one of its descendants.",
        )


def _check_frequency(hours: int) -> int:
    if hours is None or hours <= 0:
        raise ValidationFailed("Check frequency must be a positive number of hours.", field="check_frequency_hours")
    return hours


async def create_location(
    uow: UnitOfWork,
    *,
    name: str,
    type: str = "",
    parent_id: int | None = None,
    sealed: bool = False,
    seal_id: str = "",
    check_frequency_hours: int = 24,
) -> Location:
    uow.actor.require(Role.SUPERVISOR)
    clean_name = require_text(name, "name")
    await _check_parent(uow, None, parent_id)
    location = await uow.repository.add(
        Location(
            service_id=uow.actor.service_id,
            parent_id=parent_id,
            name=clean_name,
            type=type.strip(),
            sealed=sealed,
            seal_id=seal_id.strip(),
            check_frequency_hours=_check_frequency(check_frequency_hours),
            is_active=True,
            created_at=uow.now,
        )
    )
    await uow.audit(
        AuditEventType.LOCATION_CREATED,
        "Location",
        location.id,
        {"name": location.name, "parentId": parent_id, "sealed": sealed},
    )
    return location


_UPDATABLE = ("name", "type", "parent_id", "sealed", "seal_id", "check_frequency_hours", "is_active")


async def update_location(uow: UnitOfWork, location_id: int, **changes) -> Location:
    uow.actor.require(Role.SUPERVISOR)
    unknown = set(changes) - set(_UPDATABLE)
    if unknown:
        raise ValidationFailed(f"Unknown location fields: {', '.join(sorted(unknown))}.")
    location = await _location_in_service(uow, location_id)
    if "name" in changes:
        changes["name"] = require_text(changes["name"], "name")
    if "check_frequency_hours" in changes:
        _check_frequency(changes["check_frequency_hours"])
    if "parent_id" in changes:
        await _check_parent(uow, location.id, changes["parent_id"])

    applied = {}
    for key, value in changes.items():
        if getattr(location, key) != value:
            setattr(location, key, value)
            applied[key] = value
    await uow.repository.flush()
    await uow.audit(AuditEventType.LOCATION_UPDATED, "Location", location.id, {"changes": applied})
    return location


async def set_expected_content(
    uow: UnitOfWork, location_id: int, catalog_id: int, expected_quantity: int
) -> LocationExpectedContent:
    uow.actor.require(Role.SUPERVISOR)
    if expected_quantity is None or expected_quantity < 0:
        raise ValidationFailed("Expected quantity cannot be negative.", field="expected_quantity")
    location = await _location_in_service(uow, location_id)
    catalog = await uow.repository.get_catalog(catalog_id)
    if catalog is None or catalog.service_id != uow.actor.service_id:
        raise PreconditionFailed(Reason.NOT_FOUND, f"Catalog entry {catalog_id} not found.")
    entry = await uow.repository.get_expected_content(location.id, catalog_id)
    if entry is None:
        entry = await uow.repository.add(
            LocationExpectedContent(location_id=location.id, catalog_id=catalog_id, expected_quantity=expected_quantity)
        )
    else:
        entry.expected_quantity = expected_quantity
        await uow.repository.flush()
    await uow.audit(
        AuditEventType.LOCATION_UPDATED,
        "Location",
        location.id,
        {"catalogId": catalog_id, "expectedQuantity": expected_quantity},
    )
    return entry
