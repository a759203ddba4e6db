import pytest
from prometheus_client import REGISTRY

from medtracker.custody_service.app.errors import WitnessFailure, WitnessRejected
from medtracker.custody_service.app.witness import WitnessVerifier

from conftest import PASSWORD


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


async def _verify(store, email, password, acting_user_id=None):
    seed = store.seed
    async with store.service.reading() as repository:
        return await WitnessVerifier(repository).verify(
            email,
            password,
            seed.paramedic.user_id if acting_user_id is None else acting_user_id,
            seed.service_id,
        )


@pytest.mark.asyncio
async def test_verified_witness(store) -> None:
    tracker = _MetricTracker("custody_witness_verifications_total", {"outcome": "verified"})
    result = await _verify(store, "  ELI@metro.test ", PASSWORD)
    assert result.user_id == store.seed.user_ids["emt"]
    assert result.email == "eli@metro.test"
    assert tracker.delta() == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("email_key", "password", "expected"),
    [
        (None, PASSWORD, WitnessFailure.MISSING_CREDENTIALS),
        ("emt", "", WitnessFailure.MISSING_CREDENTIALS),
        ("emt", "wrong", WitnessFailure.INVALID_CREDENTIALS),
        ("inactive", PASSWORD, WitnessFailure.INVALID_CREDENTIALS),
        ("paramedic", PASSWORD, WitnessFailure.SELF_WITNESS_DISALLOWED),
        ("outsider", PASSWORD, WitnessFailure.NOT_A_MEMBER),
    ],
)
async def test_witness_failures(store, email_key, password, expected) -> None:
    email = store.seed.emails[email_key] if email_key else ""
    tracker = _MetricTracker("custody_witness_verifications_total", {"outcome": expected.value})
    with pytest.raises(WitnessRejected) as excinfo:
        await _verify(store, email, password)
    assert excinfo.value.failure is expected
    assert tracker.delta() == 1


@pytest.mark.asyncio
async def test_checks_run_in_order(store) -> None:
    # Own email with a bad password fails on credentials before the self check.
    with pytest.raises(WitnessRejected) as bad_password:
        await _verify(store, store.seed.emails["paramedic"], "wrong")
    assert bad_password.value.failure is WitnessFailure.INVALID_CREDENTIALS

    # A non-member who is also the actor is reported as self-witness first.
    outsider_id = store.seed.user_ids["outsider"]
    with pytest.raises(WitnessRejected) as self_first:
        await _verify(store, store.seed.emails["outsider"], PASSWORD, acting_user_id=outsider_id)
    assert self_first.value.failure is WitnessFailure.SELF_WITNESS_DISALLOWED
