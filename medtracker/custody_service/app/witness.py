"""Dual-control witness verification."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from medtracker.common.security import verify_password

from .errors import WitnessFailure, WitnessRejected
from .metrics import CUSTODY_WITNESS_VERIFICATIONS_TOTAL
from .repository import CustodyRepository

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WitnessResult:
    """A verified second user, ready to sign once the subject row exists."""

    user_id: int
    email: str


class WitnessVerifier:
    def __init__(self, repository: CustodyRepository) -> None:
        self.repository = repository

    async def verify(
        self,
        witness_email: str | None,
        witness_password: str | None,
        acting_user_id: int,
        service_id: int,
    ) -> WitnessResult:
        """Run the four checks in order and stop at the first failure.

        Raises :class:`WitnessRejected` carrying the failing check.
        """

        email = (witness_email or "").strip()
        if not email or not witness_password:
            self._reject(WitnessFailure.MISSING_CREDENTIALS)

        user = await self.repository.get_user_by_email(email)
        if user is None or not verify_password(witness_password, user.password_hash) or not user.is_active:
            self._reject(WitnessFailure.INVALID_CREDENTIALS)

        if user.id == acting_user_id:
            self._reject(WitnessFailure.SELF_WITNESS_DISALLOWED)

        if await self.repository.get_active_membership(user.id, service_id) is None:
            self._reject(WitnessFailure.NOT_A_MEMBER)

        CUSTODY_WITNESS_VERIFICATIONS_TOTAL.labels(outcome="verified").inc()
        _LOGGER.info("Witness user %s verified for service %s", user.id, service_id)
        return WitnessResult(user_id=user.id, email=user.email)

    async def confirm(self, witness: WitnessResult, acting_user_id: int, service_id: int) -> None:
        """Re-check a witness verified earlier, without asking for the password again."""

        if witness.user_id == acting_user_id:
            self._reject(WitnessFailure.SELF_WITNESS_DISALLOWED)
        user = await self.repository.get_user(witness.user_id)
        if user is None or not user.is_active:
            self._reject(WitnessFailure.INVALID_CREDENTIALS)
        if await self.repository.get_active_membership(witness.user_id, service_id) is None:
            self._reject(WitnessFailure.NOT_A_MEMBER)

    @staticmethod
    def _reject(failure: WitnessFailure):
        CUSTODY_WITNESS_VERIFICATIONS_TOTAL.labels(outcome=failure.value).inc()
        _LOGGER.info("Witness rejected: %s", failure.value)
        raise WitnessRejected(failure)
