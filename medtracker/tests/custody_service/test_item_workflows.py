import pytest

from medtracker.custody_service.app.domain import InventoryItemRef, ItemStatus, WasteRecordRef
from medtracker.custody_service.app.errors import (
    ConcurrencyConflict,
    PreconditionFailed,
    Reason,
    ValidationFailed,
    WitnessFailure,
    WitnessRejected,
    WorkflowStateError,
)
from medtracker.custody_service.app.models import AdministrationRecord, Transfer, WasteRecord, WitnessSignature
from medtracker.custody_service.app.workflows import WasteMode, WorkflowStep

from conftest import PASSWORD


# Administer -------------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_dose_needs_no_witness(store) -> None:
    outcome = await store.service.administer_item(
        store.seed.paramedic, code="MOR001", patient_id="PT-1", dose_given=1, route="IV"
    )

    assert outcome.item.status == ItemStatus.ADMINISTERED.value
    assert outcome.administration.dose_wasted == 0
    assert outcome.administration.dose_unit == "mg"
    assert outcome.waste is None
    assert outcome.signature is None
    assert await store.audit_types() == ["ITEM_ADMINISTERED"]


@pytest.mark.asyncio
async def test_partial_dose_wastes_remainder_with_witness(store) -> None:
    workflow = store.service.administer(store.seed.paramedic)
    snapshot = await workflow.lookup("  mor001 ")
    assert snapshot.code == "MOR001"
    assert snapshot.lot_number == "L-100"

    wasted = workflow.detail(patient_id="PT-7", dose_given=0.25, route="IM")
    assert wasted == 0.75
    assert workflow.step is WorkflowStep.WITNESS
    with pytest.raises(WorkflowStateError):
        workflow.review()

    await workflow.witness(store.seed.emails["emt"], PASSWORD)
    summary = workflow.review()
    assert summary["dose_wasted"] == 0.75
    outcome = await workflow.commit()

    assert outcome.waste.amount_wasted == 0.75
    assert outcome.waste.administration_id == outcome.administration.id
    assert outcome.signature.subject == WasteRecordRef(outcome.waste.id)
    assert outcome.signature.witness_user_id == store.seed.user_ids["emt"]
    assert await store.audit_types() == ["ITEM_ADMINISTERED", "ITEM_WASTED", "WASTE_WITNESSED"]
    assert workflow.step is WorkflowStep.COMMITTED


@pytest.mark.asyncio
async def test_rejected_witness_writes_nothing(store) -> None:
    with pytest.raises(WitnessRejected) as excinfo:
        await store.service.administer_item(
            store.seed.paramedic,
            code="MOR001",
            patient_id="PT-1",
            dose_given=0.5,
            route="IV",
            witness_email=store.seed.emails["paramedic"],
            witness_password=PASSWORD,
        )

    assert excinfo.value.failure is WitnessFailure.SELF_WITNESS_DISALLOWED
    assert (await store.item("MOR001")).status == ItemStatus.IN_STOCK.value
    assert await store.audit_types() == []
    assert await store.count(AdministrationRecord) == 0
    assert await store.count(WasteRecord) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "reason"),
    [
        ("GAU001", Reason.NOT_CONTROLLED),
        ("ZZZ999", Reason.NOT_FOUND),
        ("CNT001", Reason.NOT_FOUND),
    ],
)
async def test_administer_lookup_preconditions(store, code, reason) -> None:
    workflow = store.service.administer(store.seed.paramedic)
    with pytest.raises(PreconditionFailed) as excinfo:
        await workflow.lookup(code)
    assert excinfo.value.reason is reason
    assert workflow.step is WorkflowStep.LOOKUP


@pytest.mark.asyncio
async def test_administer_validates_input(store) -> None:
    workflow = store.service.administer(store.seed.paramedic)
    with pytest.raises(ValidationFailed):
        await workflow.lookup("MOR")
    await workflow.lookup("MOR001")
    with pytest.raises(ValidationFailed) as excinfo:
        workflow.detail(patient_id="PT-1", dose_given=0, route="IV")
    assert excinfo.value.field == "dose_given"
    with pytest.raises(ValidationFailed):
        workflow.detail(patient_id=" ", dose_given=1, route="IV")


@pytest.mark.asyncio
async def test_dose_cannot_exceed_the_unit(store) -> None:
    workflow = store.service.administer(store.seed.paramedic)
    await workflow.lookup("MOR001")
    with pytest.raises(ValidationFailed) as excinfo:
        workflow.detail(patient_id="PT-1", dose_given=5, route="IV")
    assert excinfo.value.field == "dose_given"
    assert workflow.step is WorkflowStep.DETAIL

    with pytest.raises(ValidationFailed):
        await store.service.administer_item(
            store.seed.paramedic, code="MOR001", patient_id="PT-1", dose_given=1.5, route="IV"
        )
    assert (await store.item("MOR001")).status == ItemStatus.IN_STOCK.value
    assert await store.count(AdministrationRecord) == 0
    assert await store.audit_types() == []


@pytest.mark.asyncio
async def test_already_administered_item_is_not_in_stock(store) -> None:
    await store.service.administer_item(
        store.seed.paramedic, code="MOR001", patient_id="PT-1", dose_given=1, route="IV"
    )
    with pytest.raises(PreconditionFailed) as excinfo:
        await store.service.administer(store.seed.paramedic).lookup("MOR001")
    assert excinfo.value.reason is Reason.NOT_IN_STOCK


@pytest.mark.asyncio
async def test_cancel_leaves_no_trace(store) -> None:
    workflow = store.service.administer(store.seed.paramedic)
    await workflow.lookup("MOR001")
    workflow.detail(patient_id="PT-1", dose_given=0.5, route="IV")
    await workflow.witness(store.seed.emails["emt"], PASSWORD)
    workflow.cancel()

    assert workflow.step is WorkflowStep.CANCELLED
    with pytest.raises(WorkflowStateError):
        await workflow.commit()
    assert (await store.item("MOR001")).status == ItemStatus.IN_STOCK.value
    assert await store.audit_types() == []


@pytest.mark.asyncio
async def test_steps_out_of_order_are_rejected(store) -> None:
    workflow = store.service.administer(store.seed.paramedic)
    with pytest.raises(WorkflowStateError):
        workflow.detail(patient_id="PT-1", dose_given=1, route="IV")
    with pytest.raises(WorkflowStateError):
        await workflow.witness(store.seed.emails["emt"], PASSWORD)
    with pytest.raises(WorkflowStateError):
        await workflow.commit()

    await workflow.lookup("MOR001")
    with pytest.raises(WorkflowStateError):
        await workflow.lookup("MOR002")


# Waste and correction ---------------------------------------------------------------------


@pytest.mark.asyncio
async def test_waste_in_stock_item(store) -> None:
    outcome = await store.service.waste_item(
        store.seed.paramedic,
        code="FEN001",
        amount=1,
        method="Sink",
        notes="Dropped vial",
        witness_email=store.seed.emails["emt"],
        witness_password=PASSWORD,
    )

    assert outcome.mode is WasteMode.WASTE
    assert outcome.previous_status is ItemStatus.IN_STOCK
    assert outcome.item.status == ItemStatus.WASTED.value
    assert outcome.waste.administration_id is None
    assert outcome.signature.subject == WasteRecordRef(outcome.waste.id)
    assert await store.audit_types() == ["ITEM_WASTED", "WASTE_WITNESSED"]


@pytest.mark.asyncio
async def test_waste_after_administration_links_the_administration(store) -> None:
    administered = await store.service.administer_item(
        store.seed.paramedic, code="MOR002", patient_id="PT-2", dose_given=1, route="IV"
    )
    outcome = await store.service.waste_item(
        store.seed.paramedic,
        code="MOR002",
        amount=0.1,
        method="Sharps",
        witness_email=store.seed.emails["supervisor"],
        witness_password=PASSWORD,
    )

    assert outcome.previous_status is ItemStatus.ADMINISTERED
    assert outcome.waste.administration_id == administered.administration.id


@pytest.mark.asyncio
async def test_wasted_item_cannot_be_wasted_again(store) -> None:
    await store.service.waste_item(
        store.seed.paramedic,
        code="FEN001",
        amount=1,
        method="Sink",
        witness_email=store.seed.emails["emt"],
        witness_password=PASSWORD,
    )
    workflow = store.service.waste_or_correct(store.seed.paramedic)
    with pytest.raises(PreconditionFailed) as excinfo:
        await workflow.lookup("FEN001", WasteMode.WASTE)
    assert excinfo.value.reason is Reason.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_waste_always_needs_a_witness(store) -> None:
    with pytest.raises(WitnessRejected) as excinfo:
        await store.service.waste_item(store.seed.paramedic, code="FEN001", amount=1, method="Sink")
    assert excinfo.value.failure is WitnessFailure.MISSING_CREDENTIALS
    assert await store.audit_types() == []


@pytest.mark.asyncio
async def test_correction_reverts_wasted_item(store) -> None:
    await store.service.waste_item(
        store.seed.paramedic,
        code="FEN002",
        amount=1,
        method="Sink",
        witness_email=store.seed.emails["emt"],
        witness_password=PASSWORD,
    )
    outcome = await store.service.correct_item(
        store.seed.supervisor,
        code="fen002",
        reason="Scanned the wrong vial",
        witness_email=store.seed.emails["emt"],
        witness_password=PASSWORD,
    )

    assert outcome.mode is WasteMode.CORRECTION
    assert outcome.previous_status is ItemStatus.WASTED
    assert outcome.item.status == ItemStatus.IN_STOCK.value
    assert outcome.waste is None
    assert outcome.signature.subject == InventoryItemRef(outcome.item.id)
    assert "Correction: Scanned the wrong vial" in outcome.item.notes
    assert await store.audit_types() == ["ITEM_WASTED", "WASTE_WITNESSED", "CORRECTION_MADE"]
    # Waste history survives the correction.
    assert await store.count(WasteRecord) == 1
    assert await store.count(WitnessSignature) == 2


@pytest.mark.asyncio
async def test_correction_on_in_stock_item_keeps_status(store) -> None:
    outcome = await store.service.correct_item(
        store.seed.paramedic,
        code="GAU001",
        reason="Count note",
        witness_email=store.seed.emails["emt"],
        witness_password=PASSWORD,
    )
    assert outcome.previous_status is ItemStatus.IN_STOCK
    assert outcome.item.status == ItemStatus.IN_STOCK.value
    assert await store.audit_types() == ["CORRECTION_MADE"]


@pytest.mark.asyncio
async def test_waste_branch_details_are_checked(store) -> None:
    workflow = store.service.waste_or_correct(store.seed.paramedic)
    with pytest.raises(ValidationFailed):
        await workflow.lookup("FEN001", "Shred")
    await workflow.lookup("FEN001", "Waste")
    with pytest.raises(WorkflowStateError):
        workflow.correction_detail(reason="wrong branch")
    with pytest.raises(ValidationFailed):
        workflow.waste_detail(amount=-1, method="Sink")
    with pytest.raises(ValidationFailed):
        workflow.waste_detail(amount=1, method="")


@pytest.mark.asyncio
async def test_waste_amount_cannot_exceed_the_unit(store) -> None:
    seed = store.seed
    with pytest.raises(ValidationFailed) as excinfo:
        await store.service.waste_item(
            seed.paramedic,
            code="MOR001",
            amount=50,
            method="Sink",
            witness_email=seed.emails["emt"],
            witness_password=PASSWORD,
        )
    assert excinfo.value.field == "amount"
    assert await store.count(WasteRecord) == 0
    assert (await store.item("MOR001")).status == ItemStatus.IN_STOCK.value


@pytest.mark.asyncio
async def test_waste_amount_is_checked_against_the_live_quantity(store) -> None:
    seed = store.seed
    workflow = store.service.waste_or_correct(seed.paramedic)
    await workflow.lookup("MOR001", "Waste")
    workflow.waste_detail(amount=1, method="Sink")
    await workflow.witness(seed.emails["emt"], PASSWORD)

    await store.service.update_item(seed.supervisor, seed.items["MOR001"], quantity=0.25)

    with pytest.raises(ConcurrencyConflict):
        await workflow.commit()
    assert await store.count(WasteRecord) == 0
    assert await store.audit_types() == ["ITEM_UPDATED"]


@pytest.mark.asyncio
async def test_steps_without_an_item_are_rejected(store) -> None:
    for workflow in (
        store.service.administer(store.seed.paramedic),
        store.service.waste_or_correct(store.seed.paramedic),
        store.service.transfer(store.seed.paramedic),
    ):
        with pytest.raises(WorkflowStateError):
            workflow._require_item()


# Transfer ---------------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transfer_moves_item(store) -> None:
    seed = store.seed
    transfer = await store.service.transfer_item(
        seed.paramedic, code="MOR001", to_location_id=seed.station_id, notes="Restock"
    )

    assert transfer.from_location_id == seed.truck_id
    assert transfer.to_location_id == seed.station_id
    assert (await store.item("MOR001")).location_id == seed.station_id
    assert await store.audit_types() == ["ITEM_TRANSFERRED"]


@pytest.mark.asyncio
async def test_transfer_destination_rules(store) -> None:
    seed = store.seed
    with pytest.raises(ValidationFailed):
        await store.service.transfer_item(seed.paramedic, code="MOR001", to_location_id=seed.truck_id)
    with pytest.raises(PreconditionFailed) as excinfo:
        await store.service.transfer_item(seed.paramedic, code="MOR001", to_location_id=seed.other_location_id)
    assert excinfo.value.reason is Reason.NOT_FOUND
    assert await store.count(Transfer) == 0


@pytest.mark.asyncio
async def test_commit_detects_changes_since_lookup(store) -> None:
    seed = store.seed
    workflow = store.service.transfer(seed.paramedic)
    await workflow.lookup("MOR001")

    await store.service.administer_item(seed.paramedic, code="MOR001", patient_id="PT-1", dose_given=1, route="IV")

    await workflow.detail(to_location_id=seed.station_id)
    workflow.review()
    with pytest.raises(ConcurrencyConflict):
        await workflow.commit()

    item = await store.item("MOR001")
    assert item.location_id == seed.truck_id
    assert await store.count(Transfer) == 0
    assert await store.audit_types() == ["ITEM_ADMINISTERED"]


# Expired exchange -------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expiring_candidates_sorted_by_expiration(store) -> None:
    candidates = await store.service.expiring_items(store.seed.paramedic)

    assert [candidate.item.code for candidate in candidates] == ["OLD001", "MOR001", "MOR002"]
    assert candidates[0].days_until_expiry == pytest.approx(-2)
    assert candidates[1].days_until_expiry == pytest.approx(10)


@pytest.mark.asyncio
async def test_expired_exchange_with_replacement(store) -> None:
    item = await store.service.exchange_expired(
        store.seed.paramedic, code="MOR001", notes="Swapped at station", replacement_code="MOR002"
    )

    assert item.status == ItemStatus.EXPIRED.value
    assert item.replaced_by_item_id == store.seed.items["MOR002"]
    assert "Expired exchange: Swapped at station" in item.notes
    assert await store.audit_types() == ["ITEM_EXPIRED_EXCHANGE"]
    assert (await store.item("MOR002")).status == ItemStatus.IN_STOCK.value


@pytest.mark.asyncio
async def test_already_expired_lot_can_be_exchanged(store) -> None:
    item = await store.service.exchange_expired(store.seed.paramedic, code="OLD001")
    assert item.status == ItemStatus.EXPIRED.value
    assert item.replaced_by_item_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize(("code", "reason"), [("FEN001", Reason.NOT_EXPIRING), ("GAU001", Reason.NO_LOT)])
async def test_expired_exchange_preconditions(store, code, reason) -> None:
    with pytest.raises(PreconditionFailed) as excinfo:
        await store.service.exchange_expired(store.seed.paramedic, code=code)
    assert excinfo.value.reason is reason


@pytest.mark.asyncio
async def test_item_cannot_replace_itself(store) -> None:
    with pytest.raises(ValidationFailed):
        await store.service.exchange_expired(store.seed.paramedic, code="MOR001", replacement_code="MOR001")


@pytest.mark.asyncio
async def test_exchange_window_follows_clock(store) -> None:
    store.clock.advance(days=200)
    codes = [candidate.item.code for candidate in await store.service.expiring_items(store.seed.paramedic)]
    assert "FEN001" in codes
    item = await store.service.exchange_expired(store.seed.paramedic, code="FEN001")
    assert item.status == ItemStatus.EXPIRED.value
