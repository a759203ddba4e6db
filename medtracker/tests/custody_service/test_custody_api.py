from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from medtracker.common import ServiceSettings
from medtracker.common.kafka import KafkaConsumerStub
from medtracker.custody_service.app.errors import PersistenceFailure
from medtracker.custody_service.app.main import create_app
from medtracker.custody_service.app.services import CustodyService

from conftest import PASSWORD


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield


@asynccontextmanager
async def api(store, **overrides):
    settings = ServiceSettings(
        app_name="Custody Service Test",
        enable_metrics=False,
        enable_tracing=False,
        database_url=store.database_url,
        **overrides,
    )
    app = create_app(settings, clock=store.clock)
    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


def headers(actor) -> dict[str, str]:
    return {"X-User-Id": str(actor.user_id), "X-Service-Id": str(actor.service_id)}


@pytest.mark.asyncio
async def test_health_and_readiness(store) -> None:
    async with api(store) as client:
        health = await client.get("/health")
        ready = await client.get("/health/ready")

    assert health.json() == {"status": "ok"}
    assert ready.status_code == 200
    assert ready.json() == {"status": "ready"}


@pytest.mark.asyncio
async def test_actor_headers_are_required_and_checked(store) -> None:
    seed = store.seed
    async with api(store) as client:
        missing = await client.get("/items")
        foreign = await client.get(
            "/items",
            headers={"X-User-Id": str(seed.outsider.user_id), "X-Service-Id": str(seed.service_id)},
        )
        listed = await client.get("/items", params={"locationId": seed.truck_id}, headers=headers(seed.paramedic))

    assert missing.status_code == 422
    assert foreign.status_code == 403
    assert foreign.json()["detail"]["reason"] == "not_a_member"
    assert sorted(item["code"] for item in listed.json()) == ["GAU001", "MOR001", "MOR002"]


@pytest.mark.asyncio
async def test_login_and_switch_service(store) -> None:
    seed = store.seed
    async with api(store) as client:
        bad = await client.post("/auth/login", json={"email": seed.emails["emt"], "password": "nope"})
        login = await client.post("/auth/login", json={"email": seed.emails["floater"], "password": PASSWORD})
        floater = {"X-User-Id": str(seed.user_ids["floater"]), "X-Service-Id": str(seed.service_id)}
        switched = await client.post("/auth/switch-service", json={"serviceId": seed.other_service_id}, headers=floater)
        logout = await client.post("/auth/logout", headers=floater)

    assert bad.status_code == 401
    assert bad.json()["detail"]["code"] == "precondition_failed"
    body = login.json()
    assert body["serviceId"] is None
    assert len(body["memberships"]) == 2
    assert switched.status_code == 200
    assert switched.json()["serviceId"] == seed.other_service_id
    assert switched.json()["role"] == "EMT"
    assert logout.status_code == 204


@pytest.mark.asyncio
async def test_administer_with_and_without_witness(store) -> None:
    seed = store.seed
    request = {"code": "mor001", "patientId": "PT-9", "doseGiven": 0.5, "route": "IV"}
    async with api(store) as client:
        rejected = await client.post("/items/administer", json=request, headers=headers(seed.paramedic))
        accepted = await client.post(
            "/items/administer",
            json={**request, "witnessEmail": seed.emails["emt"], "witnessPassword": PASSWORD},
            headers=headers(seed.paramedic),
        )
        again = await client.post("/items/administer", json=request, headers=headers(seed.paramedic))
        wasted = await client.get("/audit", params={"eventType": "ITEM_WASTED"}, headers=headers(seed.supervisor))

    assert rejected.status_code == 409
    assert rejected.json()["detail"]["reason"] == "witness_rejected"
    assert rejected.json()["detail"]["failure"] == "MissingCredentials"

    assert accepted.status_code == 201
    body = accepted.json()
    assert body["doseWasted"] == 0.5
    assert body["item"]["status"] == "Administered"
    assert body["wasteRecordId"] is not None

    assert again.status_code == 409
    assert again.json()["detail"]["reason"] == "not_in_stock"

    events = wasted.json()
    assert len(events) == 1
    assert events[0]["entityId"] == seed.items["MOR001"]


@pytest.mark.asyncio
async def test_waste_transfer_and_exchange_routes(store) -> None:
    seed = store.seed
    witness = {"witnessEmail": seed.emails["supervisor"], "witnessPassword": PASSWORD}
    async with api(store) as client:
        waste = await client.post(
            "/items/waste",
            json={"code": "FEN001", "amount": 1, "method": "Sink", **witness},
            headers=headers(seed.paramedic),
        )
        correction = await client.post(
            "/items/correction",
            json={"code": "FEN001", "reason": "Wrong vial", **witness},
            headers=headers(seed.paramedic),
        )
        same_place = await client.post(
            "/items/transfer",
            json={"code": "MOR002", "toLocationId": seed.truck_id},
            headers=headers(seed.paramedic),
        )
        moved = await client.post(
            "/items/transfer",
            json={"code": "MOR002", "toLocationId": seed.station_id},
            headers=headers(seed.paramedic),
        )
        expiring = await client.get("/items/expiring", headers=headers(seed.paramedic))
        exchanged = await client.post(
            "/items/expired-exchange", json={"code": "OLD001"}, headers=headers(seed.paramedic)
        )
        not_expiring = await client.post(
            "/items/expired-exchange", json={"code": "FEN002"}, headers=headers(seed.paramedic)
        )

    assert waste.status_code == 201
    assert waste.json()["mode"] == "Waste"
    assert correction.status_code == 200
    assert correction.json()["item"]["status"] == "InStock"
    assert correction.json()["previousStatus"] == "Wasted"
    assert same_place.status_code == 400
    assert same_place.json()["detail"]["field"] == "to_location_id"
    assert moved.status_code == 201
    assert moved.json()["toLocationId"] == seed.station_id
    assert [row["item"]["code"] for row in expiring.json()][0] == "OLD001"
    assert exchanged.json()["status"] == "Expired"
    assert not_expiring.status_code == 409
    assert not_expiring.json()["detail"]["reason"] == "not_expiring"


@pytest.mark.asyncio
async def test_item_lookup_and_compliance(store) -> None:
    seed = store.seed
    async with api(store) as client:
        found = await client.get("/items/by-code/fen001", headers=headers(seed.emt))
        missing = await client.get("/items/by-code/XXXXXX", headers=headers(seed.emt))
        compliance = await client.get(f"/items/{seed.items['MOR001']}/compliance", headers=headers(seed.emt))
        foreign = await client.get(f"/items/{seed.items['CNT001']}/compliance", headers=headers(seed.emt))

    assert found.json()["code"] == "FEN001"
    assert missing.status_code == 404
    assert compliance.json()["checkStatus"] == "OK"
    assert compliance.json()["expirationStatus"] == "DueSoon"
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_expiring_route_reports_store_failures(store, monkeypatch) -> None:
    async def unavailable(self, actor):
        raise PersistenceFailure("database is locked")

    monkeypatch.setattr(CustodyService, "expiring_items", unavailable)
    async with api(store) as client:
        response = await client.get("/items/expiring", headers=headers(store.seed.paramedic))

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "persistence_failure"


@pytest.mark.asyncio
async def test_location_routes(store) -> None:
    seed = store.seed
    async with api(store) as client:
        forbidden = await client.post("/locations", json={"name": "Closet"}, headers=headers(seed.emt))
        created = await client.post(
            "/locations",
            json={"name": "Medic 9", "parentId": seed.station_id, "checkFrequencyHours": 12},
            headers=headers(seed.supervisor),
        )
        cycle = await client.patch(
            f"/locations/{seed.station_id}", json={"parentId": seed.box_id}, headers=headers(seed.supervisor)
        )
        expected = await client.put(
            f"/locations/{seed.truck_id}/expected/{seed.gauze_id}",
            json={"expectedQuantity": 1},
            headers=headers(seed.supervisor),
        )
        reconciliation = await client.get(f"/locations/{seed.truck_id}/reconciliation", headers=headers(seed.emt))
        sealed = await client.post(
            f"/locations/{seed.box_id}/checks", json={"sealIntact": True, "sealId": "SEAL-1001"}, headers=headers(seed.emt)
        )
        broken = await client.post(
            f"/locations/{seed.box_id}/checks", json={"sealIntact": False}, headers=headers(seed.emt)
        )
        unsealed = await client.post(
            f"/locations/{seed.truck_id}/checks",
            json={"verifiedCodes": ["MOR001", "MOR002", "GAU001"]},
            headers=headers(seed.emt),
        )
        tree = await client.get("/locations/tree", headers=headers(seed.emt))

    assert forbidden.status_code == 403
    assert created.status_code == 201
    assert created.json()["parentId"] == seed.station_id
    assert cycle.status_code == 409
    assert cycle.json()["detail"]["reason"] == "location_cycle"
    assert expected.json()["expectedQuantity"] == 1
    assert {line["catalogName"]: line["status"] for line in reconciliation.json()} == {
        "Morphine 10mg": "OK",
        "Gauze 4x4": "OK",
    }
    assert sealed.status_code == 201
    assert sorted(sealed.json()["stampedItemIds"]) == sorted([seed.items["FEN001"], seed.items["FEN002"]])
    assert broken.status_code == 409
    assert broken.json()["detail"]["reason"] == "seal_not_verified"
    assert unsealed.status_code == 201
    assert len(unsealed.json()["lines"]) == 3

    roots = {node["name"]: node for node in tree.json()}
    assert set(roots) == {"Station 1", "Empty Shelf"}
    station_children = {child["name"] for child in roots["Station 1"]["children"]}
    assert station_children == {"Medic 7", "Medic 9"}
    assert roots["Empty Shelf"]["complianceStatus"] == "OK"


@pytest.mark.asyncio
async def test_order_routes(store) -> None:
    seed = store.seed
    async with api(store) as client:
        created = await client.post(
            "/orders",
            json={"vendorId": seed.vendor_id, "lines": [{"catalogId": seed.morphine_id, "quantityOrdered": 2}], "submit": False},
            headers=headers(seed.paramedic),
        )
        order_id = created.json()["id"]
        line_id = created.json()["lines"][0]["id"]
        early = await client.post(
            f"/orders/{order_id}/receipt",
            json={"lines": [{"lineId": line_id, "quantityReceived": 2, "locationId": seed.truck_id}]},
            headers=headers(seed.paramedic),
        )
        submitted = await client.post(f"/orders/{order_id}/submit", headers=headers(seed.paramedic))
        received = await client.post(
            f"/orders/{order_id}/receipt",
            json={
                "lines": [
                    {
                        "lineId": line_id,
                        "quantityReceived": 2,
                        "locationId": seed.truck_id,
                        "lotNumber": "L-777",
                        "expirationDate": "2026-01-01T00:00:00Z",
                    }
                ]
            },
            headers=headers(seed.paramedic),
        )
        listed = await client.get("/orders", params={"status": "Received"}, headers=headers(seed.paramedic))
        missing = await client.get("/orders/9999", headers=headers(seed.paramedic))

    assert created.status_code == 201
    assert created.json()["status"] == "Draft"
    assert early.status_code == 409
    assert early.json()["detail"]["reason"] == "order_not_receivable"
    assert submitted.json()["status"] == "Submitted"
    body = received.json()
    assert body["order"]["status"] == "Received"
    assert len(body["itemCodes"]) == 2
    assert len(body["lotIds"]) == 1
    assert [order["id"] for order in listed.json()] == [order_id]
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_discrepancy_and_incident_routes(store) -> None:
    seed = store.seed
    async with api(store) as client:
        opened = await client.post(
            "/discrepancies", json={"description": "Count off", "code": "MOR001"}, headers=headers(seed.emt)
        )
        case_id = opened.json()["id"]
        investigating = await client.post(
            f"/discrepancies/{case_id}/investigate", json={"notes": "Checking logs"}, headers=headers(seed.supervisor)
        )
        resolved = await client.post(
            f"/discrepancies/{case_id}/resolve", json={"resolution": "Miscount"}, headers=headers(seed.supervisor)
        )
        twice = await client.post(
            f"/discrepancies/{case_id}/resolve", json={"resolution": "Again"}, headers=headers(seed.supervisor)
        )
        incident = await client.post(
            "/incidents",
            json={"title": "Cardiac arrest", "items": [{"code": "MOR002", "quantityUsed": 1}]},
            headers=headers(seed.paramedic),
        )
        incident_id = incident.json()["id"]
        added = await client.post(
            f"/incidents/{incident_id}/items", json={"code": "GAU001"}, headers=headers(seed.paramedic)
        )
        closed = await client.post(f"/incidents/{incident_id}/close", headers=headers(seed.paramedic))
        fetched = await client.get(f"/incidents/{incident_id}", headers=headers(seed.paramedic))

    assert opened.status_code == 201
    assert investigating.json()["status"] == "Investigating"
    assert resolved.json()["status"] == "Resolved"
    assert twice.status_code == 409
    assert twice.json()["detail"]["reason"] == "case_resolved"
    assert incident.status_code == 201
    assert added.status_code == 201
    assert closed.json()["status"] == "Closed"
    assert len(fetched.json()["items"]) == 2


@pytest.mark.asyncio
async def test_data_routes(store) -> None:
    seed = store.seed
    async with api(store) as client:
        forbidden = await client.get("/data/export", headers=headers(seed.emt))
        exported = await client.get("/data/export", headers=headers(seed.supervisor))
        imported = await client.post("/data/import", json=exported.json(), headers=headers(seed.supervisor))
        reset_denied = await client.post("/data/reset", headers=headers(seed.supervisor))
        reset = await client.post("/data/reset", headers=headers(seed.admin))

    assert forbidden.status_code == 403
    assert exported.status_code == 200
    assert "inventory_items" in exported.json()["tables"]
    assert imported.status_code == 200
    assert imported.json()["counts"]["inventory_items"] == 7
    assert reset_denied.status_code == 403
    assert reset.status_code == 204


@pytest.mark.asyncio
async def test_committed_events_reach_the_audit_topic(store) -> None:
    seed = store.seed
    received: list[dict] = []

    async def handler(_topic, _key, message):
        received.append(message)

    topic = "custody.audit.api-test"
    consumer = KafkaConsumerStub([topic], handler)
    await consumer.start()
    try:
        async with api(store, audit_topic=topic) as client:
            response = await client.post(
                "/items/transfer",
                json={"code": "GAU001", "toLocationId": seed.station_id},
                headers=headers(seed.paramedic),
            )
            failed = await client.post(
                "/items/transfer",
                json={"code": "GAU001", "toLocationId": seed.station_id},
                headers=headers(seed.paramedic),
            )
    finally:
        await consumer.stop()

    assert response.status_code == 201
    assert failed.status_code == 400
    assert [message["audit"]["eventType"] for message in received] == ["ITEM_TRANSFERRED"]
    assert received[0]["audit"]["serviceId"] == seed.service_id
