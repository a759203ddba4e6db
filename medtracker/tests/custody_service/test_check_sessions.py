import pytest

from medtracker.custody_service.app.clock import ensure_utc
from medtracker.custody_service.app.domain import ComplianceStatus
from medtracker.custody_service.app.errors import (
    PreconditionFailed,
    Reason,
    ValidationFailed,
    WorkflowStateError,
)
from medtracker.custody_service.app.models import CheckSession

from conftest import FIXED_NOW


@pytest.mark.asyncio
async def test_sealed_check_stamps_every_item_inside(store) -> None:
    seed = store.seed
    store.clock.advance(hours=5)

    outcome = await store.service.check_sealed_location(seed.paramedic, seed.box_id, seal_id=" seal-1001 ")

    assert set(outcome.stamped_item_ids) == {seed.items["FEN001"], seed.items["FEN002"]}
    assert outcome.session.seal_verified is True
    assert outcome.session.lines == []
    for code in ("FEN001", "FEN002"):
        assert ensure_utc((await store.item(code)).last_checked_at) == store.clock()
    # Items elsewhere on the truck are untouched.
    assert ensure_utc((await store.item("MOR001")).last_checked_at) < FIXED_NOW
    assert await store.audit_types() == [
        "CHECK_SESSION_STARTED",
        "CHECK_SEAL_VERIFIED",
        "CHECK_SESSION_COMPLETED",
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("intact", "seal_id", "reason"),
    [
        (False, None, Reason.SEAL_NOT_VERIFIED),
        (True, "SEAL-9999", Reason.SEAL_MISMATCH),
    ],
)
async def test_sealed_check_refuses_bad_seal(store, intact, seal_id, reason) -> None:
    with pytest.raises(PreconditionFailed) as excinfo:
        await store.service.check_sealed_location(
            store.seed.paramedic, store.seed.box_id, seal_intact=intact, seal_id=seal_id
        )
    assert excinfo.value.reason is reason
    assert await store.count(CheckSession) == 0
    assert await store.audit_types() == []


@pytest.mark.asyncio
async def test_sealed_check_cannot_complete_before_seal_confirmed(store) -> None:
    workflow = store.service.check_session(store.seed.paramedic)
    assert await workflow.start(store.seed.box_id) == []
    with pytest.raises(PreconditionFailed) as excinfo:
        workflow.review()
    assert excinfo.value.reason is Reason.SEAL_NOT_VERIFIED
    with pytest.raises(WorkflowStateError):
        workflow.verify_item("FEN001")


@pytest.mark.asyncio
async def test_unsealed_check_requires_every_in_stock_item(store) -> None:
    seed = store.seed
    workflow = store.service.check_session(seed.paramedic)
    pending = await workflow.start(seed.truck_id)
    assert sorted(line.code for line in pending) == ["GAU001", "MOR001", "MOR002"]

    workflow.verify_item("mor001")
    workflow.verify_item("MOR002")
    with pytest.raises(ValidationFailed):
        workflow.review()
    assert [line.code for line in workflow.remaining] == ["GAU001"]

    workflow.verify_item("GAU001", notes="Two packs short")
    workflow.review()
    outcome = await workflow.commit()

    assert len(outcome.session.lines) == 3
    assert outcome.session.seal_verified is False
    assert await store.audit_types() == [
        "CHECK_SESSION_STARTED",
        "CHECK_ITEM_VERIFIED",
        "CHECK_ITEM_VERIFIED",
        "CHECK_ITEM_VERIFIED",
        "CHECK_SESSION_COMPLETED",
    ]


@pytest.mark.asyncio
async def test_unsealed_check_rejects_items_from_elsewhere(store) -> None:
    workflow = store.service.check_session(store.seed.paramedic)
    await workflow.start(store.seed.truck_id)
    with pytest.raises(PreconditionFailed) as excinfo:
        workflow.verify_item("FEN001")
    assert excinfo.value.reason is Reason.NOT_FOUND
    with pytest.raises(PreconditionFailed) as not_sealed:
        workflow.confirm_seal(intact=True)
    assert not_sealed.value.reason is Reason.NOT_SEALED


@pytest.mark.asyncio
async def test_empty_location_cannot_complete(store) -> None:
    with pytest.raises(ValidationFailed):
        await store.service.check_location_items(store.seed.paramedic, store.seed.shelf_id, verified_codes=[])
    assert await store.count(CheckSession) == 0


@pytest.mark.asyncio
async def test_check_of_foreign_location_is_not_found(store) -> None:
    with pytest.raises(PreconditionFailed) as excinfo:
        await store.service.check_session(store.seed.paramedic).start(store.seed.other_location_id)
    assert excinfo.value.reason is Reason.NOT_FOUND


@pytest.mark.asyncio
async def test_check_resets_compliance(store) -> None:
    seed = store.seed
    store.clock.advance(hours=20)
    before = await store.service.item_compliance(seed.paramedic, seed.items["FEN001"])
    assert before.check is ComplianceStatus.DUE_SOON
    assert before.expiration is ComplianceStatus.OK

    await store.service.check_sealed_location(seed.paramedic, seed.box_id)

    after = await store.service.item_compliance(seed.paramedic, seed.items["FEN001"])
    assert after.check is ComplianceStatus.OK
    statuses = await store.service.location_compliance(seed.paramedic)
    assert statuses[seed.box_id] is ComplianceStatus.OK
    assert statuses[seed.truck_id] is ComplianceStatus.DUE_SOON
    assert statuses[seed.shelf_id] is ComplianceStatus.OK
