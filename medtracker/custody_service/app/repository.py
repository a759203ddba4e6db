"""Data access helpers for the custody service."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import Select, and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .domain import ItemStatus
from .models import (
    AdministrationRecord,
    AuditEvent,
    DiscrepancyCase,
    Incident,
    InventoryItem,
    ItemCatalog,
    Location,
    LocationExpectedContent,
    MedicationLot,
    Order,
    ServiceMembership,
    User,
    Vendor,
)

CODE_LENGTH = 6


def normalise_code(code: str | None) -> str | None:
    """Return the upper-cased code, or ``None`` when it cannot be a valid code."""

    if code is None:
        return None
    cleaned = code.strip().upper()
    if len(cleaned) != CODE_LENGTH:
        return None
    return cleaned


class CustodyRepository:
    """Persistence helpers shared by every custody workflow."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, entity):
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return entity

    async def add_all(self, entities: Sequence) -> list:
        self.session.add_all(list(entities))
        await self.session.flush()
        return list(entities)

    async def flush(self) -> None:
        await self.session.flush()

    # Users and memberships ------------------------------------------------------------

    async def get_user(self, user_id: int) -> User | None:
        return await self.session.get(User, user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        result = await self.session.execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def get_membership(self, user_id: int, service_id: int) -> ServiceMembership | None:
        result = await self.session.execute(
            select(ServiceMembership).where(
                ServiceMembership.user_id == user_id,
                ServiceMembership.service_id == service_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_active_membership(self, user_id: int, service_id: int) -> ServiceMembership | None:
        membership = await self.get_membership(user_id, service_id)
        if membership is None or not membership.is_active:
            return None
        return membership

    async def list_memberships(self, user_id: int) -> list[ServiceMembership]:
        result = await self.session.execute(
            select(ServiceMembership)
            .where(ServiceMembership.user_id == user_id, ServiceMembership.is_active.is_(True))
            .order_by(ServiceMembership.service_id)
        )
        return list(result.scalars())

    # Catalog, lots, vendors -----------------------------------------------------------

    async def get_catalog(self, catalog_id: int) -> ItemCatalog | None:
        return await self.session.get(ItemCatalog, catalog_id)

    async def get_lot(self, lot_id: int | None) -> MedicationLot | None:
        if lot_id is None:
            return None
        return await self.session.get(MedicationLot, lot_id)

    async def get_vendor(self, vendor_id: int) -> Vendor | None:
        return await self.session.get(Vendor, vendor_id)

    # Items -----------------------------------------------------------------------------

    async def get_item(self, item_id: int) -> InventoryItem | None:
        return await self.session.get(InventoryItem, item_id)

    async def find_active_item_by_code(self, service_id: int, code: str | None) -> InventoryItem | None:
        normalised = normalise_code(code)
        if normalised is None:
            return None
        prefer_in_stock = case((InventoryItem.status == ItemStatus.IN_STOCK.value, 0), else_=1)
        result = await self.session.execute(
            select(InventoryItem)
            .where(
                InventoryItem.service_id == service_id,
                InventoryItem.is_active.is_(True),
                func.upper(InventoryItem.code) == normalised,
            )
            .order_by(prefer_in_stock, InventoryItem.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_items(
        self,
        service_id: int,
        *,
        location_id: int | None = None,
        status: str | None = None,
        active_only: bool = True,
    ) -> list[InventoryItem]:
        query: Select[tuple[InventoryItem]] = select(InventoryItem).where(
            InventoryItem.service_id == service_id
        )
        if location_id is not None:
            query = query.where(InventoryItem.location_id == location_id)
        if status is not None:
            query = query.where(InventoryItem.status == status)
        if active_only:
            query = query.where(InventoryItem.is_active.is_(True))
        result = await self.session.execute(query.order_by(InventoryItem.id))
        return list(result.scalars())

    async def existing_codes(self, service_id: int) -> set[str]:
        result = await self.session.execute(
            select(InventoryItem.code).where(InventoryItem.service_id == service_id)
        )
        return {code.upper() for code in result.scalars()}

    async def items_with_lots(self, service_id: int) -> list[tuple[InventoryItem, MedicationLot]]:
        result = await self.session.execute(
            select(InventoryItem, MedicationLot)
            .join(MedicationLot, MedicationLot.id == InventoryItem.lot_id)
            .where(
                InventoryItem.service_id == service_id,
                InventoryItem.is_active.is_(True),
                InventoryItem.status == ItemStatus.IN_STOCK.value,
            )
            .order_by(MedicationLot.expiration_date, InventoryItem.id)
        )
        return [(item, lot) for item, lot in result.tuples()]

    async def latest_administration(self, item_id: int) -> AdministrationRecord | None:
        result = await self.session.execute(
            select(AdministrationRecord)
            .where(AdministrationRecord.item_id == item_id)
            .order_by(AdministrationRecord.administered_at.desc(), AdministrationRecord.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # Locations -------------------------------------------------------------------------

    async def get_location(self, location_id: int | None) -> Location | None:
        if location_id is None:
            return None
        return await self.session.get(Location, location_id)

    async def list_locations(self, service_id: int, *, active_only: bool = True) -> list[Location]:
        query = select(Location).where(Location.service_id == service_id)
        if active_only:
            query = query.where(Location.is_active.is_(True))
        result = await self.session.execute(query.order_by(Location.name, Location.id))
        return list(result.scalars())

    async def get_expected_content(self, location_id: int, catalog_id: int) -> LocationExpectedContent | None:
        result = await self.session.execute(
            select(LocationExpectedContent).where(
                and_(
                    LocationExpectedContent.location_id == location_id,
                    LocationExpectedContent.catalog_id == catalog_id,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_expected_contents(self, location_id: int) -> list[LocationExpectedContent]:
        result = await self.session.execute(
            select(LocationExpectedContent)
            .where(LocationExpectedContent.location_id == location_id)
            .order_by(LocationExpectedContent.id)
        )
        return list(result.scalars())

    async def catalogs_by_id(self, catalog_ids: Iterable[int]) -> dict[int, ItemCatalog]:
        ids = set(catalog_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(ItemCatalog).where(ItemCatalog.id.in_(ids)))
        return {catalog.id: catalog for catalog in result.scalars()}

    # Orders, cases, checks --------------------------------------------------------------

    async def get_order(self, order_id: int) -> Order | None:
        return await self.session.get(Order, order_id)

    async def list_orders(self, service_id: int, *, status: str | None = None) -> list[Order]:
        query = select(Order).where(Order.service_id == service_id)
        if status is not None:
            query = query.where(Order.status == status)
        result = await self.session.execute(query.order_by(Order.order_date.desc(), Order.id.desc()))
        return list(result.scalars())

    async def get_case(self, case_id: int) -> DiscrepancyCase | None:
        return await self.session.get(DiscrepancyCase, case_id)

    async def list_cases(self, service_id: int, *, status: str | None = None) -> list[DiscrepancyCase]:
        query = select(DiscrepancyCase).where(DiscrepancyCase.service_id == service_id)
        if status is not None:
            query = query.where(DiscrepancyCase.status == status)
        result = await self.session.execute(query.order_by(DiscrepancyCase.opened_at.desc(), DiscrepancyCase.id.desc()))
        return list(result.scalars())

    async def get_incident(self, incident_id: int) -> Incident | None:
        return await self.session.get(Incident, incident_id)

    async def list_incidents(self, service_id: int) -> list[Incident]:
        result = await self.session.execute(
            select(Incident)
            .where(Incident.service_id == service_id)
            .order_by(Incident.incident_date.desc(), Incident.id.desc())
        )
        return list(result.scalars())

    # Audit ---------------------------------------------------------------------------

    async def query_audit(
        self,
        service_id: int,
        *,
        event_type: str | None = None,
        entity_type: str | None = None,
        entity_id: int | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditEvent]:
        query: Select[tuple[AuditEvent]] = select(AuditEvent).where(AuditEvent.service_id == service_id)
        if event_type is not None:
            query = query.where(AuditEvent.event_type == event_type)
        if entity_type is not None:
            query = query.where(AuditEvent.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(AuditEvent.entity_id == entity_id)
        if since is not None:
            query = query.where(AuditEvent.timestamp >= since)
        if until is not None:
            query = query.where(AuditEvent.timestamp <= until)
        query = query.order_by(AuditEvent.timestamp.desc(), AuditEvent.id.desc())
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars())
