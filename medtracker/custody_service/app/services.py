"""Service layer for custody operations.

:class:`CustodyService` is the single entry point used by the API and by
tests. Multi-step workflows are handed out as objects; single-step
operations and the one-shot variants of the workflows run through
:meth:`CustodyService.run_commit`, which owns the transaction, metrics,
tracing and post-commit publishing.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medtracker.common import ServiceSettings, bound_actor, verify_password, workflow_span

from . import audit, cases, data_transfer, items, locations, orders
from .checks import CheckOutcome, CheckSessionWorkflow
from .clock import Clock, utcnow
from .compliance import check_status, expiration_status
from .domain import SYSTEM_SERVICE_ID, ActorContext, AuditEventType, ComplianceStatus, Role
from .errors import PreconditionFailed, Reason
from .events import AuditEventPublisher
from .metrics import (
    CUSTODY_AUDIT_EVENTS_TOTAL,
    CUSTODY_COMMIT_LATENCY_SECONDS,
    CUSTODY_COMMITS_TOTAL,
    commit_outcome,
)
from .models import AuditEvent, InventoryItem, Location, ServiceMembership, User
from .orders import LineReceipt, OrderReceiptWorkflow, ReceiptOutcome
from .repository import CustodyRepository
from .unit_of_work import UnitOfWork, open_read_session, open_unit_of_work
from .workflows import (
    AdministerWorkflow,
    AdministrationOutcome,
    ExpiredExchangeWorkflow,
    ExpiringCandidate,
    TransferWorkflow,
    WasteCorrectionWorkflow,
    WasteMode,
    WasteOutcome,
)

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ItemCompliance:
    item: InventoryItem
    check: ComplianceStatus
    expiration: ComplianceStatus | None


@dataclass(frozen=True)
class LoginResult:
    user: User
    memberships: list[ServiceMembership]
    actor: ActorContext | None


class CustodyService:
    """High-level operations on custody state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utcnow,
        publisher: AuditEventPublisher | None = None,
        settings: ServiceSettings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.publisher = publisher
        self.settings = settings or ServiceSettings()

    def reading(self) -> AbstractAsyncContextManager[CustodyRepository]:
        return open_read_session(self.session_factory)

    async def run_commit(
        self,
        operation: str,
        actor: ActorContext,
        work: Callable[[UnitOfWork], Awaitable[T]],
        **attributes: Any,
    ) -> T:
        """Run ``work`` in one transaction; publish its audit events once committed."""

        started = time.perf_counter()
        with bound_actor(actor.log_label), workflow_span(
            operation, user_id=actor.user_id, service_id=actor.service_id, **attributes
        ):
            try:
                async with open_unit_of_work(self.session_factory, actor, clock=self.clock) as uow:
                    result = await work(uow)
                    recorded = list(uow.ledger.recorded)
            except Exception as exc:
                CUSTODY_COMMITS_TOTAL.labels(operation=operation, outcome=commit_outcome(exc)).inc()
                _LOGGER.info("%s rolled back: %s", operation, exc)
                raise
            finally:
                CUSTODY_COMMIT_LATENCY_SECONDS.labels(operation=operation).observe(time.perf_counter() - started)

            CUSTODY_COMMITS_TOTAL.labels(operation=operation, outcome=commit_outcome(None)).inc()
            for event in recorded:
                CUSTODY_AUDIT_EVENTS_TOTAL.labels(event_type=event.event_type).inc()
            if self.publisher is not None and recorded:
                await self.publisher.audit_recorded(recorded)
        return result

    # Actors and sessions ---------------------------------------------------------------

    async def resolve_actor(self, user_id: int, service_id: int) -> ActorContext:
        async with self.reading() as repository:
            user = await repository.get_user(user_id)
            membership = await repository.get_active_membership(user_id, service_id)
        if user is None or not user.is_active or membership is None:
            raise PreconditionFailed(Reason.NOT_A_MEMBER, f"User {user_id} is not a member of service {service_id}.")
        return ActorContext(user_id=user.id, service_id=service_id, role=Role.from_label(membership.role))

    async def login(self, email: str, password: str) -> LoginResult:
        """Check credentials and record USER_LOGIN.

        With exactly one membership the login is bound to that service;
        otherwise it is recorded against the system service until the user
        picks one.
        """

        async with self.reading() as repository:
            user = await repository.get_user_by_email(email or "")
            if user is None or not user.is_active or not verify_password(password, user.password_hash):
                raise PreconditionFailed(Reason.INVALID_CREDENTIALS, "Invalid email or password.")
            memberships = await repository.list_memberships(user.id)
        if len(memberships) == 1:
            membership = memberships[0]
            actor = ActorContext(user.id, membership.service_id, Role.from_label(membership.role))
            audit_actor = actor
        else:
            actor = None
            audit_actor = ActorContext(user.id, SYSTEM_SERVICE_ID, Role.DRIVER)

        async def _record(uow: UnitOfWork) -> None:
            await uow.audit(AuditEventType.USER_LOGIN, "User", user.id, {"email": user.email})

        await self.run_commit("login", audit_actor, _record)
        return LoginResult(user=user, memberships=memberships, actor=actor)

    async def switch_service(self, user_id: int, service_id: int) -> ActorContext:
        actor = await self.resolve_actor(user_id, service_id)

        async def _record(uow: UnitOfWork) -> None:
            await uow.audit(AuditEventType.SERVICE_SWITCH, "User", user_id, {"serviceId": service_id})

        await self.run_commit("switch_service", actor, _record)
        return actor

    async def logout(self, actor: ActorContext) -> None:
        async def _record(uow: UnitOfWork) -> None:
            await uow.audit(AuditEventType.USER_LOGOUT, "User", actor.user_id)

        await self.run_commit("logout", actor, _record)

    # Workflows --------------------------------------------------------------------------

    def administer(self, actor: ActorContext) -> AdministerWorkflow:
        return AdministerWorkflow(self, actor)

    def waste_or_correct(self, actor: ActorContext) -> WasteCorrectionWorkflow:
        return WasteCorrectionWorkflow(self, actor)

    def transfer(self, actor: ActorContext) -> TransferWorkflow:
        return TransferWorkflow(self, actor)

    def expired_exchange(self, actor: ActorContext) -> ExpiredExchangeWorkflow:
        return ExpiredExchangeWorkflow(self, actor)

    def check_session(self, actor: ActorContext) -> CheckSessionWorkflow:
        return CheckSessionWorkflow(self, actor)

    def order_receipt(self, actor: ActorContext) -> OrderReceiptWorkflow:
        return OrderReceiptWorkflow(self, actor)

    # One-shot workflow runs ---------------------------------------------------------------

    async def administer_item(
        self,
        actor: ActorContext,
        *,
        code: str,
        patient_id: str,
        dose_given: float,
        route: str,
        dose_unit: str | None = None,
        notes: str = "",
        waste_method: str = "",
        witness_email: str | None = None,
        witness_password: str | None = None,
    ) -> AdministrationOutcome:
        workflow = self.administer(actor)
        await workflow.lookup(code)
        dose_wasted = workflow.detail(
            patient_id=patient_id,
            dose_given=dose_given,
            route=route,
            dose_unit=dose_unit,
            notes=notes,
            waste_method=waste_method,
        )
        if dose_wasted > 0:
            await workflow.witness(witness_email, witness_password)
        workflow.review()
        return await workflow.commit()

    async def waste_item(
        self,
        actor: ActorContext,
        *,
        code: str,
        amount: float,
        method: str,
        notes: str = "",
        witness_email: str | None = None,
        witness_password: str | None = None,
    ) -> WasteOutcome:
        workflow = self.waste_or_correct(actor)
        await workflow.lookup(code, WasteMode.WASTE)
        workflow.waste_detail(amount=amount, method=method, notes=notes)
        await workflow.witness(witness_email, witness_password)
        workflow.review()
        return await workflow.commit()

    async def correct_item(
        self,
        actor: ActorContext,
        *,
        code: str,
        reason: str,
        witness_email: str | None = None,
        witness_password: str | None = None,
    ) -> WasteOutcome:
        workflow = self.waste_or_correct(actor)
        await workflow.lookup(code, WasteMode.CORRECTION)
        workflow.correction_detail(reason=reason)
        await workflow.witness(witness_email, witness_password)
        workflow.review()
        return await workflow.commit()

    async def transfer_item(self, actor: ActorContext, *, code: str, to_location_id: int, notes: str = ""):
        workflow = self.transfer(actor)
        await workflow.lookup(code)
        await workflow.detail(to_location_id=to_location_id, notes=notes)
        workflow.review()
        return await workflow.commit()

    async def exchange_expired(
        self,
        actor: ActorContext,
        *,
        code: str,
        notes: str = "",
        replacement_code: str | None = None,
    ) -> InventoryItem:
        workflow = self.expired_exchange(actor)
        await workflow.lookup(code)
        await workflow.detail(notes=notes, replacement_code=replacement_code)
        workflow.review()
        return await workflow.commit()

    async def expiring_items(self, actor: ActorContext) -> list[ExpiringCandidate]:
        return await self.expired_exchange(actor).candidates()

    async def check_sealed_location(
        self,
        actor: ActorContext,
        location_id: int,
        *,
        seal_intact: bool = True,
        seal_id: str | None = None,
        notes: str = "",
    ) -> CheckOutcome:
        workflow = self.check_session(actor)
        await workflow.start(location_id)
        workflow.confirm_seal(intact=seal_intact, seal_id=seal_id, notes=notes)
        workflow.review()
        return await workflow.commit()

    async def check_location_items(
        self, actor: ActorContext, location_id: int, *, verified_codes: Sequence[str]
    ) -> CheckOutcome:
        workflow = self.check_session(actor)
        await workflow.start(location_id)
        for code in verified_codes:
            workflow.verify_item(code)
        workflow.review()
        return await workflow.commit()

    async def receive_order(self, actor: ActorContext, order_id: int, receipts: Sequence[LineReceipt]) -> ReceiptOutcome:
        workflow = self.order_receipt(actor)
        await workflow.lookup(order_id)
        for receipt in receipts:
            workflow.receive_line(
                receipt.line_id,
                quantity_received=receipt.quantity_received,
                location_id=receipt.location_id,
                lot_number=receipt.lot_number,
                serial_number=receipt.serial_number,
                expiration_date=receipt.expiration_date,
            )
        workflow.review()
        return await workflow.commit()

    # Single-step operations ---------------------------------------------------------------

    async def create_order(self, actor: ActorContext, **values: Any):
        return await self.run_commit("create_order", actor, partial(orders.create_order, **values))

    async def submit_order(self, actor: ActorContext, order_id: int):
        return await self.run_commit("submit_order", actor, partial(orders.submit_order, order_id=order_id), order_id=order_id)

    async def open_discrepancy(self, actor: ActorContext, **values: Any):
        return await self.run_commit("open_discrepancy", actor, partial(cases.open_discrepancy, **values))

    async def investigate_discrepancy(self, actor: ActorContext, case_id: int, *, notes: str = ""):
        work = partial(cases.start_investigation, case_id=case_id, notes=notes)
        return await self.run_commit("investigate_discrepancy", actor, work, case_id=case_id)

    async def resolve_discrepancy(self, actor: ActorContext, case_id: int, *, resolution: str):
        work = partial(cases.resolve_discrepancy, case_id=case_id, resolution=resolution)
        return await self.run_commit("resolve_discrepancy", actor, work, case_id=case_id)

    async def create_incident(self, actor: ActorContext, **values: Any):
        return await self.run_commit("create_incident", actor, partial(cases.create_incident, **values))

    async def add_incident_item(self, actor: ActorContext, incident_id: int, entry: cases.IncidentItemInput):
        work = partial(cases.add_incident_item, incident_id=incident_id, entry=entry)
        return await self.run_commit("add_incident_item", actor, work, incident_id=incident_id)

    async def close_incident(self, actor: ActorContext, incident_id: int):
        work = partial(cases.close_incident, incident_id=incident_id)
        return await self.run_commit("close_incident", actor, work, incident_id=incident_id)

    async def create_catalog(self, actor: ActorContext, **values: Any):
        return await self.run_commit("create_catalog", actor, partial(items.create_catalog, **values))

    async def update_item(self, actor: ActorContext, item_id: int, **values: Any):
        work = partial(items.update_item, item_id=item_id, **values)
        return await self.run_commit("update_item", actor, work, item_id=item_id)

    async def deactivate_item(self, actor: ActorContext, item_id: int, *, reason: str = ""):
        work = partial(items.deactivate_item, item_id=item_id, reason=reason)
        return await self.run_commit("deactivate_item", actor, work, item_id=item_id)

    async def create_location(self, actor: ActorContext, **values: Any) -> Location:
        return await self.run_commit("create_location", actor, partial(locations.create_location, **values))

    async def update_location(self, actor: ActorContext, location_id: int, **changes: Any) -> Location:
        work = partial(locations.update_location, location_id=location_id, **changes)
        return await self.run_commit("update_location", actor, work, location_id=location_id)

    async def set_expected_content(self, actor: ActorContext, location_id: int, catalog_id: int, expected_quantity: int):
        work = partial(
            locations.set_expected_content,
            location_id=location_id,
            catalog_id=catalog_id,
            expected_quantity=expected_quantity,
        )
        return await self.run_commit("set_expected_content", actor, work, location_id=location_id)

    async def export_data(self, actor: ActorContext) -> dict[str, Any]:
        return await self.run_commit("export_data", actor, data_transfer.export_data)

    async def import_data(self, actor: ActorContext, payload: dict[str, Any]) -> dict[str, int]:
        return await self.run_commit("import_data", actor, partial(data_transfer.import_data, payload=payload))

    async def reset_data(self, actor: ActorContext) -> None:
        await self.run_commit("reset_data", actor, data_transfer.reset_data)

    # Read paths ---------------------------------------------------------------------------

    async def find_item_by_code(self, actor: ActorContext, code: str) -> InventoryItem | None:
        async with self.reading() as repository:
            return await repository.find_active_item_by_code(actor.service_id, code)

    async def list_items(
        self, actor: ActorContext, *, location_id: int | None = None, status: str | None = None
    ) -> list[InventoryItem]:
        async with self.reading() as repository:
            return await repository.list_items(actor.service_id, location_id=location_id, status=status)

    async def item_compliance(self, actor: ActorContext, item_id: int, now: datetime | None = None) -> ItemCompliance:
        current = now or self.clock()
        async with self.reading() as repository:
            item = await repository.get_item(item_id)
            if item is None or item.service_id != actor.service_id:
                raise PreconditionFailed(Reason.NOT_FOUND, f"Item {item_id} not found.")
            location = await repository.get_location(item.location_id)
            lot = await repository.get_lot(item.lot_id)
        frequency = location.check_frequency_hours if location is not None else 24
        expiration = None
        if lot is not None and lot.expiration_date is not None:
            expiration = expiration_status(lot.expiration_date, current, window_days=self.settings.expiry_window_days)
        return ItemCompliance(item=item, check=check_status(item.last_checked_at, frequency, current), expiration=expiration)

    async def location_tree(self, actor: ActorContext) -> list[locations.LocationNode]:
        async with self.reading() as repository:
            return locations.build_tree(await repository.list_locations(actor.service_id))

    async def location_compliance(
        self, actor: ActorContext, now: datetime | None = None
    ) -> dict[int, ComplianceStatus]:
        current = now or self.clock()
        async with self.reading() as repository:
            active_locations = await repository.list_locations(actor.service_id)
            active_items = await repository.list_items(actor.service_id)
        return locations.summarise_compliance(active_locations, active_items, current)

    async def reconcile_location(self, actor: ActorContext, location_id: int) -> list[locations.ReconciliationLine]:
        async with self.reading() as repository:
            location = await repository.get_location(location_id)
            if location is not None and location.service_id != actor.service_id:
                location = None
            expected = await repository.list_expected_contents(location_id)
            catalogs = await repository.catalogs_by_id(entry.catalog_id for entry in expected)
            stock = await repository.list_items(actor.service_id, location_id=location_id) if location else []
        return locations.reconcile(location, expected, stock, catalogs)

    async def audit_query(self, actor: ActorContext, **filters: Any) -> list[AuditEvent]:
        async with self.reading() as repository:
            return await audit.query(repository.session, actor.service_id, **filters)

    async def get_order(self, actor: ActorContext, order_id: int):
        async with self.reading() as repository:
            order = await repository.get_order(order_id)
        if order is None or order.service_id != actor.service_id:
            raise PreconditionFailed(Reason.NOT_FOUND, f"Order {order_id} not found.")
        return order

    async def list_orders(self, actor: ActorContext, *, status: str | None = None):
        async with self.reading() as repository:
            return await repository.list_orders(actor.service_id, status=status)

    async def list_cases(self, actor: ActorContext, *, status: str | None = None):
        async with self.reading() as repository:
            return await repository.list_cases(actor.service_id, status=status)

    async def get_incident(self, actor: ActorContext, incident_id: int):
        async with self.reading() as repository:
            incident = await repository.get_incident(incident_id)
        if incident is None or incident.service_id != actor.service_id:
            raise PreconditionFailed(Reason.NOT_FOUND, f"Incident {incident_id} not found.")
        return incident

    async def list_incidents(self, actor: ActorContext):
        async with self.reading() as repository:
            return await repository.list_incidents(actor.service_id)
