from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medtracker.common import ServiceSettings, create_schema, dispose_engines, get_session_factory, hash_password
from medtracker.custody_service.app.domain import ActorContext, ItemStatus, Role
from medtracker.custody_service.app.models import (
    AuditEvent,
    Base,
    Company,
    InventoryItem,
    ItemCatalog,
    Location,
    LocationExpectedContent,
    MedicationLot,
    Service,
    ServiceMembership,
    User,
    Vendor,
)
from medtracker.custody_service.app.services import CustodyService

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
PASSWORD = "correct-horse-battery"
PASSWORD_HASH = hash_password(PASSWORD, rounds=1000)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@dataclass
class Seed:
    service_id: int
    other_service_id: int
    paramedic: ActorContext
    emt: ActorContext
    supervisor: ActorContext
    admin: ActorContext
    outsider: ActorContext
    emails: dict[str, str]
    user_ids: dict[str, int]
    vendor_id: int
    morphine_id: int
    fentanyl_id: int
    gauze_id: int
    other_catalog_id: int
    station_id: int
    truck_id: int
    box_id: int
    shelf_id: int
    other_location_id: int
    items: dict[str, int] = field(default_factory=dict)


@dataclass
class Store:
    service: CustodyService
    session_factory: async_sessionmaker[AsyncSession]
    clock: FixedClock
    seed: Seed
    database_url: str

    async def item(self, code: str) -> InventoryItem:
        async with self.session_factory() as session:
            result = await session.execute(select(InventoryItem).where(InventoryItem.code == code))
            return result.scalar_one()

    async def audit_types(self, service_id: int | None = None) -> list[str]:
        """Event types in insertion order."""

        query = select(AuditEvent.event_type).order_by(AuditEvent.id)
        if service_id is not None:
            query = query.where(AuditEvent.service_id == service_id)
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars())

    async def count(self, model) -> int:
        async with self.session_factory() as session:
            return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


async def seed_store(session_factory: async_sessionmaker[AsyncSession], now: datetime) -> Seed:
    async with session_factory() as session:
        company = Company(name="Metro Holdings", created_at=now)
        session.add(company)
        await session.flush()
        metro = Service(company_id=company.id, name="Metro EMS", created_at=now)
        county = Service(company_id=company.id, name="County EMS", created_at=now)
        session.add_all([metro, county])
        await session.flush()

        people = {
            "paramedic": ("pat@metro.test", [(metro, Role.PARAMEDIC)]),
            "emt": ("eli@metro.test", [(metro, Role.EMT)]),
            "supervisor": ("sam@metro.test", [(metro, Role.SUPERVISOR)]),
            "admin": ("ada@metro.test", [(metro, Role.SYSTEM_ADMIN)]),
            "outsider": ("oz@county.test", [(county, Role.PARAMEDIC)]),
            "floater": ("flo@metro.test", [(metro, Role.EMT), (county, Role.EMT)]),
        }
        users: dict[str, User] = {}
        for key, (email, memberships) in people.items():
            user = User(email=email, password_hash=PASSWORD_HASH, first_name=key.title(), created_at=now)
            session.add(user)
            await session.flush()
            users[key] = user
            for service, role in memberships:
                session.add(
                    ServiceMembership(user_id=user.id, service_id=service.id, role=role.label, created_at=now)
                )
        inactive = User(email="gone@metro.test", password_hash=PASSWORD_HASH, is_active=False, created_at=now)
        session.add(inactive)
        await session.flush()
        session.add(ServiceMembership(user_id=inactive.id, service_id=metro.id, role=Role.EMT.label, created_at=now))
        users["inactive"] = inactive

        vendor = Vendor(service_id=metro.id, name="MedSupply", contact_info="orders@medsupply.test")
        morphine = ItemCatalog(service_id=metro.id, name="Morphine 10mg", category="Opioid", is_controlled=True, unit="mg")
        fentanyl = ItemCatalog(service_id=metro.id, name="Fentanyl 100mcg", category="Opioid", is_controlled=True, unit="mcg")
        gauze = ItemCatalog(service_id=metro.id, name="Gauze 4x4", category="Supply", is_controlled=False, unit="pack")
        county_morphine = ItemCatalog(service_id=county.id, name="Morphine 10mg", is_controlled=True, unit="mg")
        session.add_all([vendor, morphine, fentanyl, gauze, county_morphine])
        await session.flush()

        station = Location(service_id=metro.id, name="Station 1", type="Station", created_at=now)
        shelf = Location(service_id=metro.id, name="Empty Shelf", type="Shelf", created_at=now)
        county_truck = Location(service_id=county.id, name="County Truck", type="Vehicle", created_at=now)
        session.add_all([station, shelf, county_truck])
        await session.flush()
        truck = Location(service_id=metro.id, parent_id=station.id, name="Medic 7", type="Vehicle", created_at=now)
        session.add(truck)
        await session.flush()
        box = Location(
            service_id=metro.id,
            parent_id=truck.id,
            name="Drug Box A",
            type="DrugBox",
            sealed=True,
            seal_id="SEAL-1001",
            created_at=now,
        )
        session.add(box)
        await session.flush()

        near_lot = MedicationLot(
            service_id=metro.id,
            catalog_id=morphine.id,
            lot_number="L-100",
            serial_number="SN-L100",
            expiration_date=now + timedelta(days=10),
            code="LOT100",
            created_at=now,
        )
        far_lot = MedicationLot(
            service_id=metro.id,
            catalog_id=fentanyl.id,
            lot_number="F-200",
            serial_number="SN-F200",
            expiration_date=now + timedelta(days=200),
            code="LOT200",
            created_at=now,
        )
        old_lot = MedicationLot(
            service_id=metro.id,
            catalog_id=morphine.id,
            lot_number="L-OLD",
            serial_number="SN-LOLD",
            expiration_date=now - timedelta(days=2),
            code="LOTOLD",
            created_at=now,
        )
        session.add_all([near_lot, far_lot, old_lot])
        await session.flush()

        checked = now - timedelta(hours=1)
        specs = [
            ("MOR001", metro, morphine, near_lot, truck),
            ("MOR002", metro, morphine, near_lot, truck),
            ("FEN001", metro, fentanyl, far_lot, box),
            ("FEN002", metro, fentanyl, far_lot, box),
            ("GAU001", metro, gauze, None, truck),
            ("OLD001", metro, morphine, old_lot, station),
            ("CNT001", county, county_morphine, None, county_truck),
        ]
        items: dict[str, int] = {}
        for code, service, catalog, lot, location in specs:
            item = InventoryItem(
                service_id=service.id,
                catalog_id=catalog.id,
                lot_id=lot.id if lot is not None else None,
                location_id=location.id,
                status=ItemStatus.IN_STOCK.value,
                quantity=1,
                code=code,
                last_checked_at=checked,
                created_at=now,
            )
            session.add(item)
            await session.flush()
            items[code] = item.id

        session.add_all(
            [
                LocationExpectedContent(location_id=truck.id, catalog_id=morphine.id, expected_quantity=2),
                LocationExpectedContent(location_id=truck.id, catalog_id=gauze.id, expected_quantity=3),
            ]
        )
        await session.commit()

        def actor(key: str, service: Service, role: Role) -> ActorContext:
            return ActorContext(user_id=users[key].id, service_id=service.id, role=role)

        return Seed(
            service_id=metro.id,
            other_service_id=county.id,
            paramedic=actor("paramedic", metro, Role.PARAMEDIC),
            emt=actor("emt", metro, Role.EMT),
            supervisor=actor("supervisor", metro, Role.SUPERVISOR),
            admin=actor("admin", metro, Role.SYSTEM_ADMIN),
            outsider=actor("outsider", county, Role.PARAMEDIC),
            emails={key: user.email for key, user in users.items()},
            user_ids={key: user.id for key, user in users.items()},
            vendor_id=vendor.id,
            morphine_id=morphine.id,
            fentanyl_id=fentanyl.id,
            gauze_id=gauze.id,
            other_catalog_id=county_morphine.id,
            station_id=station.id,
            truck_id=truck.id,
            box_id=box.id,
            shelf_id=shelf.id,
            other_location_id=county_truck.id,
            items=items,
        )


@pytest_asyncio.fixture
async def store(tmp_path):
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'custody.db'}"
    await create_schema(database_url, Base.metadata)
    session_factory = get_session_factory(database_url)
    clock = FixedClock(FIXED_NOW)
    seed = await seed_store(session_factory, clock())
    settings = ServiceSettings(
        app_name="Custody Service Test",
        enable_metrics=False,
        enable_tracing=False,
        database_url=database_url,
    )
    service = CustodyService(session_factory, clock=clock, settings=settings)
    yield Store(service=service, session_factory=session_factory, clock=clock, seed=seed, database_url=database_url)
    await dispose_engines()
