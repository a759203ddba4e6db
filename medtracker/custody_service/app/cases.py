"""Discrepancy cases and field incidents."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from .clock import ensure_utc
from .domain import AuditEventType, DiscrepancyStatus, IncidentStatus
from .errors import PreconditionFailed, Reason, ValidationFailed
from .models import DiscrepancyCase, Incident, IncidentItem, InventoryItem
from .unit_of_work import UnitOfWork
from .workflows import require_code, require_text

_LOGGER = logging.getLogger(__name__)


async def _item_in_service(uow: UnitOfWork, *, item_id: int | None = None, code: str | None = None) -> InventoryItem:
    if item_id is not None:
        item = await uow.repository.get_item(item_id)
        if item is None or item.service_id != uow.actor.service_id:
            raise PreconditionFailed(Reason.NOT_FOUND, f"Item {item_id} not found.")
        return item
    normalised = require_code(code)
    item = await uow.repository.find_active_item_by_code(uow.actor.service_id, normalised)
    if item is None:
        raise PreconditionFailed(Reason.NOT_FOUND, f"No active item with code {normalised}.")
    return item


async def _case_in_service(uow: UnitOfWork, case_id: int) -> DiscrepancyCase:
    case = await uow.repository.get_case(case_id)
    if case is None or case.service_id != uow.actor.service_id:
        raise PreconditionFailed(Reason.NOT_FOUND, f"Discrepancy case {case_id} not found.")
    if case.status == DiscrepancyStatus.RESOLVED.value:
        raise PreconditionFailed(Reason.CASE_RESOLVED, f"Discrepancy case {case_id} is already resolved.")
    return case


async def open_discrepancy(
    uow: UnitOfWork,
    *,
    description: str,
    item_id: int | None = None,
    code: str | None = None,
) -> DiscrepancyCase:
    text = require_text(description, "description")
    item = await _item_in_service(uow, item_id=item_id, code=code)
    case = await uow.repository.add(
        DiscrepancyCase(
            service_id=item.service_id,
            item_id=item.id,
            status=DiscrepancyStatus.OPEN.value,
            description=text,
            resolution="",
            opened_by=uow.actor.user_id,
            opened_at=uow.now,
        )
    )
    await uow.audit(
        AuditEventType.DISCREPANCY_OPENED,
        "DiscrepancyCase",
        case.id,
        {"itemId": item.id, "code": item.code, "description": text},
    )
    return case


async def start_investigation(uow: UnitOfWork, case_id: int, *, notes: str = "") -> DiscrepancyCase:
    case = await _case_in_service(uow, case_id)
    if case.status != DiscrepancyStatus.OPEN.value:
        raise PreconditionFailed(Reason.INVALID_TRANSITION, f"Discrepancy case {case_id} is {case.status}.")
    case.status = DiscrepancyStatus.INVESTIGATING.value
    await uow.repository.flush()
    await uow.audit(
        AuditEventType.DISCREPANCY_INVESTIGATING,
        "DiscrepancyCase",
        case.id,
        {"notes": notes.strip()},
    )
    return case


async def resolve_discrepancy(uow: UnitOfWork, case_id: int, *, resolution: str) -> DiscrepancyCase:
    text = require_text(resolution, "resolution")
    case = await _case_in_service(uow, case_id)
    case.status = DiscrepancyStatus.RESOLVED.value
    case.resolution = text
    case.resolved_by = uow.actor.user_id
    case.resolved_at = uow.now
    await uow.repository.flush()
    await uow.audit(AuditEventType.DISCREPANCY_RESOLVED, "DiscrepancyCase", case.id, {"resolution": text})
    return case


@dataclass(frozen=True)
class IncidentItemInput:
    item_id: int | None = None
    code: str | None = None
    quantity_used: float = 1
    notes: str = ""


async def _add_incident_item(uow: UnitOfWork, incident: Incident, entry: IncidentItemInput) -> IncidentItem:
    if entry.quantity_used is None or entry.quantity_used <= 0:
        raise ValidationFailed("Quantity used must be greater than zero.", field="quantity_used")
    item = await _item_in_service(uow, item_id=entry.item_id, code=entry.code)
    incident_item = IncidentItem(
        item_id=item.id,
        quantity_used=entry.quantity_used,
        notes=entry.notes.strip(),
        added_by=uow.actor.user_id,
        added_at=uow.now,
    )
    incident.items.append(incident_item)
    await uow.repository.flush()
    await uow.audit(
        AuditEventType.INCIDENT_ITEM_ADDED,
        "IncidentItem",
        incident_item.id,
        {"incidentId": incident.id, "itemId": item.id, "quantityUsed": entry.quantity_used},
    )
    return incident_item


async def create_incident(
    uow: UnitOfWork,
    *,
    title: str,
    description: str = "",
    incident_date: datetime | None = None,
    items: Sequence[IncidentItemInput] = (),
) -> Incident:
    incident = await uow.repository.add(
        Incident(
            service_id=uow.actor.service_id,
            title=require_text(title, "title"),
            description=description.strip(),
            incident_date=ensure_utc(incident_date) or uow.now,
            status=IncidentStatus.OPEN.value,
            created_by=uow.actor.user_id,
            created_at=uow.now,
            items=[],
        )
    )
    await uow.audit(AuditEventType.INCIDENT_CREATED, "Incident", incident.id, {"title": incident.title})
    for entry in items:
        await _add_incident_item(uow, incident, entry)
    _LOGGER.info("Incident %s created with %d item(s)", incident.id, len(items))
    return incident


async def _open_incident(uow: UnitOfWork, incident_id: int) -> Incident:
    incident = await uow.repository.get_incident(incident_id)
    if incident is None or incident.service_id != uow.actor.service_id:
        raise PreconditionFailed(Reason.NOT_FOUND, f"Incident {incident_id} not found.")
    if incident.status != IncidentStatus.OPEN.value:
        raise PreconditionFailed(Reason.INCIDENT_CLOSED, f"Incident {incident_id} is closed.")
    return incident


async def add_incident_item(uow: UnitOfWork, incident_id: int, entry: IncidentItemInput) -> IncidentItem:
    incident = await _open_incident(uow, incident_id)
    return await _add_incident_item(uow, incident, entry)


async def close_incident(uow: UnitOfWork, incident_id: int) -> Incident:
    incident = await _open_incident(uow, incident_id)
    incident.status = IncidentStatus.CLOSED.value
    incident.closed_at = uow.now
    await uow.repository.flush()
    await uow.audit(AuditEventType.INCIDENT_CLOSED, "Incident", incident.id, {"title": incident.title})
    return incident
