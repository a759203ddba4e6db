"""Domain vocabulary of the custody service: statuses, roles, actors and references."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import ClassVar

from .errors import PreconditionFailed, Reason


class ItemStatus(str, Enum):
    IN_STOCK = "InStock"
    ADMINISTERED = "Administered"
    WASTED = "Wasted"
    EXPIRED = "Expired"
    LOST = "Lost"
    TRANSFERRED = "Transferred"
    DAMAGED = "Damaged"


class OrderStatus(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    PARTIALLY_RECEIVED = "PartiallyReceived"
    RECEIVED = "Received"
    CANCELLED = "Cancelled"


class DiscrepancyStatus(str, Enum):
    OPEN = "Open"
    INVESTIGATING = "Investigating"
    RESOLVED = "Resolved"


class IncidentStatus(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"


class ComplianceStatus(str, Enum):
    OK = "OK"
    DUE_SOON = "DueSoon"
    OVERDUE = "Overdue"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    ComplianceStatus.OK: 0,
    ComplianceStatus.DUE_SOON: 1,
    ComplianceStatus.OVERDUE: 2,
}


class ReconciliationStatus(str, Enum):
    OK = "OK"
    SHORT = "Short"


class AuditEventType(str, Enum):
    """Persisted audit taxonomy. Reports and exports match on these strings."""

    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    SERVICE_SWITCH = "SERVICE_SWITCH"
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_SUBMITTED = "ORDER_SUBMITTED"
    ORDER_RECEIVED = "ORDER_RECEIVED"
    ORDER_LINE_RECEIVED = "ORDER_LINE_RECEIVED"
    ITEM_CREATED = "ITEM_CREATED"
    ITEM_UPDATED = "ITEM_UPDATED"
    ITEM_DEACTIVATED = "ITEM_DEACTIVATED"
    ITEM_TRANSFERRED = "ITEM_TRANSFERRED"
    ITEM_ADMINISTERED = "ITEM_ADMINISTERED"
    ITEM_WASTED = "ITEM_WASTED"
    ITEM_EXPIRED_EXCHANGE = "ITEM_EXPIRED_EXCHANGE"
    LOCATION_CREATED = "LOCATION_CREATED"
    LOCATION_UPDATED = "LOCATION_UPDATED"
    CHECK_SESSION_STARTED = "CHECK_SESSION_STARTED"
    CHECK_SEAL_VERIFIED = "CHECK_SEAL_VERIFIED"
    CHECK_ITEM_VERIFIED = "CHECK_ITEM_VERIFIED"
    CHECK_SESSION_COMPLETED = "CHECK_SESSION_COMPLETED"
    WASTE_WITNESSED = "WASTE_WITNESSED"
    CORRECTION_MADE = "CORRECTION_MADE"
    DISCREPANCY_OPENED = "DISCREPANCY_OPENED"
    DISCREPANCY_INVESTIGATING = "DISCREPANCY_INVESTIGATING"
    DISCREPANCY_RESOLVED = "DISCREPANCY_RESOLVED"
    INCIDENT_CREATED = "INCIDENT_CREATED"
    INCIDENT_ITEM_ADDED = "INCIDENT_ITEM_ADDED"
    INCIDENT_CLOSED = "INCIDENT_CLOSED"
    DATA_EXPORTED = "DATA_EXPORTED"
    DATA_IMPORTED = "DATA_IMPORTED"
    DATA_RESET = "DATA_RESET"
    DATA_SEEDED = "DATA_SEEDED"


SYSTEM_SERVICE_ID = 0


class Role(IntEnum):
    """Membership roles ranked from least to most privileged."""

    DRIVER = 10
    EMT = 20
    ADVANCED_EMT = 30
    PARAMEDIC = 40
    SUPERVISOR = 50
    COMPANY_ADMIN = 60
    SYSTEM_ADMIN = 70

    @property
    def label(self) -> str:
        return _ROLE_LABELS[self]

    @classmethod
    def from_label(cls, value: str) -> Role:
        for role, label in _ROLE_LABELS.items():
            if label == value:
                return role
        raise ValueError(f"unknown role {value!r}")


_ROLE_LABELS = {
    Role.DRIVER: "Driver",
    Role.EMT: "EMT",
    Role.ADVANCED_EMT: "AdvancedEMT",
    Role.PARAMEDIC: "Paramedic",
    Role.SUPERVISOR: "Supervisor",
    Role.COMPANY_ADMIN: "CompanyAdmin",
    Role.SYSTEM_ADMIN: "SystemAdmin",
}


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, and on behalf of which service."""

    user_id: int
    service_id: int
    role: Role

    def has_permission(self, minimum: Role) -> bool:
        return self.role >= minimum

    def require(self, minimum: Role) -> None:
        if not self.has_permission(minimum):
            raise PreconditionFailed(
                Reason.INSUFFICIENT_ROLE,
                f"{minimum.label} role or higher is required",
            )

    @property
    def log_label(self) -> str:
        return f"user:{self.user_id}@service:{self.service_id}"


# Witness subjects. A signature always points at exactly one of these.
@dataclass(frozen=True)
class WasteRecordRef:
    id: int
    kind: ClassVar[str] = "WasteRecord"


@dataclass(frozen=True)
class InventoryItemRef:
    id: int
    kind: ClassVar[str] = "InventoryItem"


WitnessSubject = WasteRecordRef | InventoryItemRef

_SUBJECT_KINDS: dict[str, type[WasteRecordRef] | type[InventoryItemRef]] = {
    "WasteRecord": WasteRecordRef,
    "InventoryItem": InventoryItemRef,
}


def subject_from_columns(kind: str, related_id: int) -> WitnessSubject:
    try:
        return _SUBJECT_KINDS[kind](related_id)
    except KeyError:
        raise ValueError(f"unknown witness subject kind {kind!r}") from None


_FORWARD_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.IN_STOCK: frozenset(
        {
            ItemStatus.ADMINISTERED,
            ItemStatus.WASTED,
            ItemStatus.EXPIRED,
            ItemStatus.LOST,
            ItemStatus.TRANSFERRED,
            ItemStatus.DAMAGED,
        }
    ),
    ItemStatus.ADMINISTERED: frozenset({ItemStatus.WASTED}),
    ItemStatus.EXPIRED: frozenset({ItemStatus.WASTED}),
    ItemStatus.DAMAGED: frozenset({ItemStatus.WASTED}),
    ItemStatus.WASTED: frozenset(),
    ItemStatus.LOST: frozenset(),
    ItemStatus.TRANSFERRED: frozenset(),
}

CORRECTABLE_STATUSES = frozenset({ItemStatus.ADMINISTERED, ItemStatus.WASTED})


def can_transition(current: ItemStatus | str, target: ItemStatus | str) -> bool:
    return ItemStatus(target) in _FORWARD_TRANSITIONS[ItemStatus(current)]


def ensure_transition(current: ItemStatus | str, target: ItemStatus | str) -> None:
    """Reject any move that is not a forward transition.

    The correction revert is not in this table; only the correction
    workflow performs it.
    """

    if not can_transition(current, target):
        raise PreconditionFailed(
            Reason.INVALID_TRANSITION,
            f"item cannot move from {ItemStatus(current).value} to {ItemStatus(target).value}",
        )
