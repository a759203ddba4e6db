"""Error taxonomy of the custody engine.

Every error derives from :class:`CustodyError`. The API layer maps each
family to an HTTP status; callers inside the process match on the class and,
for precondition failures, on the stable :class:`Reason` code.
"""

from __future__ import annotations

from enum import Enum


class Reason(str, Enum):
    NOT_FOUND = "not_found"
    NOT_IN_STOCK = "not_in_stock"
    NOT_ACTIVE = "not_active"
    NOT_CONTROLLED = "not_controlled"
    INVALID_TRANSITION = "invalid_transition"
    WITNESS_REQUIRED = "witness_required"
    WITNESS_REJECTED = "witness_rejected"
    NO_LOT = "no_lot"
    NOT_EXPIRING = "not_expiring"
    SEAL_NOT_VERIFIED = "seal_not_verified"
    SEAL_MISMATCH = "seal_mismatch"
    NOT_SEALED = "not_sealed"
    CASE_RESOLVED = "case_resolved"
    INCIDENT_CLOSED = "incident_closed"
    ORDER_NOT_RECEIVABLE = "order_not_receivable"
    ORDER_NOT_DRAFT = "order_not_draft"
    LOCATION_CYCLE = "location_cycle"
    INSUFFICIENT_ROLE = "insufficient_role"
    NOT_A_MEMBER = "not_a_member"
    INVALID_CREDENTIALS = "invalid_credentials"


class WitnessFailure(str, Enum):
    MISSING_CREDENTIALS = "MissingCredentials"
    INVALID_CREDENTIALS = "InvalidCredentials"
    SELF_WITNESS_DISALLOWED = "SelfWitnessDisallowed"
    NOT_A_MEMBER = "NotAMember"


class CustodyError(Exception):
    """Base class for every failure reported by the custody engine."""

    code = "custody_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(CustodyError):
    """Input is malformed or missing; nothing was read or written."""

    code = "validation_failed"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class WorkflowStateError(ValidationFailed):
    """A workflow step was called out of order."""

    code = "workflow_state"


class PreconditionFailed(CustodyError):
    """The entity exists but is in the wrong state for the operation."""

    code = "precondition_failed"

    def __init__(self, reason: Reason, message: str | None = None) -> None:
        super().__init__(message or reason.value.replace("_", " "))
        self.reason = reason


class WitnessRejected(PreconditionFailed):
    def __init__(self, failure: WitnessFailure) -> None:
        super().__init__(Reason.WITNESS_REJECTED, _WITNESS_MESSAGES[failure])
        self.failure = failure


_WITNESS_MESSAGES = {
    WitnessFailure.MISSING_CREDENTIALS: "Witness email and password are required.",
    WitnessFailure.INVALID_CREDENTIALS: "Invalid witness credentials.",
    WitnessFailure.SELF_WITNESS_DISALLOWED: "Witness must be a different user.",
    WitnessFailure.NOT_A_MEMBER: "Witness must be a member of the current service.",
}


class ConcurrencyConflict(CustodyError):
    """State changed between lookup and commit; refresh and retry."""

    code = "concurrency_conflict"


class PersistenceFailure(CustodyError):
    """The entity store rejected or could not run the unit of work."""

    code = "persistence_failure"


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to update or delete an append-only row."""
