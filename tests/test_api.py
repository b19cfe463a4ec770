import httpx
import pytest
from fastapi import FastAPI

from services.enrollment_scheduler_service import EnrollmentSchedulerService
from apis.flow_api import create_flow_api
from apis.event_api import create_event_api
from apis.signal_api import create_signal_api
from apis.enrollment_api import create_enrollment_api

from conftest import build_flow_data, chain_edges, scenario_flow_data


@pytest.fixture
def app(log_util, services):
    scheduler = EnrollmentSchedulerService(log_util=log_util, enrollment_service=services["enrollment"])
    app = FastAPI()
    app.include_router(create_flow_api(log_util=log_util, flow_service=services["flow"], enrollment_service=services["enrollment"]))
    app.include_router(create_event_api(log_util=log_util, event_ingest_service=services["ingest"]))
    app.include_router(create_signal_api(log_util=log_util, trigger_identification_service=services["trigger"]))
    app.include_router(create_enrollment_api(
        log_util=log_util,
        enrollment_service=services["enrollment"],
        enrollment_scheduler_service=scheduler
    ))
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def create_and_activate(client, data):
    created = (await client.post("/flow/create", json=data)).json()
    response = await client.post(f"/flow/status/{created['id']}", json={"status": "active"})
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_flow_lifecycle(client):
    response = await client.post("/flow/create", json=scenario_flow_data())
    assert response.status_code == 200
    flow = response.json()
    assert flow["status"] == "draft"

    detail = await client.get(f"/flow/detail/{flow['id']}")
    assert detail.json()["nodes"][0]["config"]["eventName"] == "trial_activated"

    renamed = await client.put(f"/flow/update/{flow['id']}", json={"name": "Renamed", "expected_version": 1})
    assert renamed.json()["version"] == 2

    stale = await client.put(f"/flow/update/{flow['id']}", json={"name": "Stale", "expected_version": 1})
    assert stale.status_code == 409
    assert stale.json()["detail"]["current_version"] == 2

    listed = await client.get("/flow/list", params={"status": "draft"})
    assert [item["id"] for item in listed.json()] == [flow["id"]]

    deleted = await client.delete(f"/flow/delete/{flow['id']}")
    assert deleted.json() == {"status": "deleted", "flow_id": flow["id"]}
    assert (await client.get(f"/flow/detail/{flow['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_blocked_activation_returns_issues(client):
    flow = (await client.post("/flow/create", json=build_flow_data(nodes=[], edges=[]))).json()

    response = await client.post(f"/flow/status/{flow['id']}", json={"status": "active"})

    assert response.status_code == 400
    assert response.json()["detail"]["issues"][0]["message"] == "Flow must have a trigger node"


@pytest.mark.asyncio
async def test_validate_unsaved_graph(client):
    response = await client.post("/flow/validate", json={"nodes": [], "edges": []})

    assert response.status_code == 200
    assert response.json()["can_activate"] is False


@pytest.mark.asyncio
async def test_event_intake_and_enrollment_queries(client):
    flow = await create_and_activate(client, scenario_flow_data())
    event = {"messageId": "m-1", "userId": "u-1", "event": "trial_activated", "properties": {"plan": "trial"}}

    first = await client.post("/events", json=event)
    replay = await client.post("/events", json=event)

    assert first.json()["status"] == "ingested"
    assert first.json()["enrollments_created"] == 1
    assert replay.json()["status"] == "duplicate"

    enrollments = (await client.get(f"/flow/{flow['id']}/enrollments", params={"status": "active"})).json()
    assert len(enrollments) == 1
    assert enrollments[0]["current_node_id"] == "wait"

    by_id = await client.get(f"/enrollments/{enrollments[0]['id']}")
    by_user = await client.get("/enrollments/user/u-1")
    assert by_id.json()["event_properties"] == {"plan": "trial"}
    assert [item["id"] for item in by_user.json()] == [enrollments[0]["id"]]
    assert (await client.get("/enrollments/enr_missing")).status_code == 404


@pytest.mark.asyncio
async def test_event_batch(client):
    response = await client.post("/events/batch", json={
        "batch": [
            {"messageId": "m-1", "userId": "u-1", "event": "page_viewed"},
            {"messageId": "m-1", "userId": "u-1", "event": "page_viewed"},
            {"messageId": "m-2", "userId": "u-2", "event": "page_viewed"},
        ],
        "sentAt": "2026-03-02T12:00:00Z"
    })

    assert response.status_code == 200
    assert response.json()["ingested"] == 2
    assert response.json()["duplicates"] == 1

    assert (await client.post("/events/batch", json={"batch": []})).status_code == 422


@pytest.mark.asyncio
async def test_signals(client):
    flow = await create_and_activate(client, build_flow_data(
        nodes=[
            {"id": "t", "type": "trigger", "config": {"kind": "lifecycle_change", "lifecycleTo": ["AtRisk"]}},
            {"id": "w", "type": "delay", "config": {"kind": "fixed_duration", "durationMinutes": 60}},
            {"id": "x", "type": "exit"},
        ],
        edges=chain_edges("t", "w", "x")
    ))

    entered = await client.post("/signals/user", json={"userId": "u-1", "lifecycleState": "AtRisk"})
    assert entered.json()["lifecycle_changed"] is True
    assert entered.json()["enrollments_created"] == 1

    left = await client.post("/signals/user", json={"userId": "u-1", "lifecycleState": "Active"})
    assert left.json()["enrollments_created"] == 0

    manual = await client.post("/signals/trigger", json={
        "kind": "lifecycle_change", "user_id": "u-2", "from_state": "Active", "to_state": "AtRisk"
    })
    assert manual.json()["enrollments_created"] == 1

    enrollments = (await client.get(f"/flow/{flow['id']}/enrollments")).json()
    statuses = sorted((item["user_id"], item["status"], item["exit_reason"]) for item in enrollments)
    assert statuses == [
        ("u-1", "exited", "no longer matches entry criteria"),
        ("u-2", "active", None),
    ]


@pytest.mark.asyncio
async def test_event_trigger_signal_is_rejected(client, store):
    await create_and_activate(client, scenario_flow_data())

    response = await client.post("/signals/trigger", json={
        "kind": "event_received", "user_id": "u-1", "event_name": "trial_activated"
    })

    assert response.status_code == 400
    assert "/events" in response.json()["detail"]
    assert (await client.get("/enrollments/user/u-1")).json() == []
    assert await store.count_events() == 0


@pytest.mark.asyncio
async def test_process_due(client, clock):
    await create_and_activate(client, scenario_flow_data())
    await client.post("/events", json={"messageId": "m-1", "userId": "u-1", "event": "trial_activated"})

    clock.advance(days=1)
    response = await client.post("/enrollments/process-due")

    assert response.json()["processed"] == 1
