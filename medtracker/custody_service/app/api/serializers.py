"""ORM to response-payload conversion shared by the routers."""

from __future__ import annotations

from ..clock import ensure_utc


def serialize_item(item) -> dict[str, object]:
    return {
        "id": item.id,
        "code": item.code,
        "catalogId": item.catalog_id,
        "lotId": item.lot_id,
        "locationId": item.location_id,
        "status": item.status,
        "quantity": item.quantity,
        "notes": item.notes,
        "isActive": item.is_active,
        "lastCheckedAt": ensure_utc(item.last_checked_at),
        "createdAt": ensure_utc(item.created_at),
        "replacedByItemId": item.replaced_by_item_id,
    }


def serialize_location(location) -> dict[str, object]:
    return {
        "id": location.id,
        "parentId": location.parent_id,
        "name": location.name,
        "type": location.type,
        "sealed": location.sealed,
        "sealId": location.seal_id,
        "checkFrequencyHours": location.check_frequency_hours,
        "isActive": location.is_active,
    }


def serialize_order(order) -> dict[str, object]:
    return {
        "id": order.id,
        "vendorId": order.vendor_id,
        "status": order.status,
        "orderDate": ensure_utc(order.order_date),
        "notes": order.notes,
        "lines": [
            {
                "id": line.id,
                "catalogId": line.catalog_id,
                "quantityOrdered": line.quantity_ordered,
                "quantityReceived": line.quantity_received,
            }
            for line in order.lines
        ],
    }


def serialize_case(case) -> dict[str, object]:
    return {
        "id": case.id,
        "itemId": case.item_id,
        "status": case.status,
        "description": case.description,
        "resolution": case.resolution,
        "openedBy": case.opened_by,
        "openedAt": ensure_utc(case.opened_at),
        "resolvedBy": case.resolved_by,
        "resolvedAt": ensure_utc(case.resolved_at),
    }


def serialize_incident(incident) -> dict[str, object]:
    return {
        "id": incident.id,
        "title": incident.title,
        "description": incident.description,
        "incidentDate": ensure_utc(incident.incident_date),
        "status": incident.status,
        "closedAt": ensure_utc(incident.closed_at),
        "items": [
            {
                "id": entry.id,
                "itemId": entry.item_id,
                "quantityUsed": entry.quantity_used,
                "notes": entry.notes,
            }
            for entry in incident.items
        ],
    }


def serialize_audit_event(event) -> dict[str, object]:
    return {
        "id": event.id,
        "serviceId": event.service_id,
        "userId": event.user_id,
        "eventType": event.event_type,
        "entityType": event.entity_type,
        "entityId": event.entity_id,
        "details": event.details,
        "timestamp": ensure_utc(event.timestamp),
    }
