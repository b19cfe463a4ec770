import pytest

from models.flow_trigger_data import TriggerSignal
from models.flow_node_data import TriggerNodeConfig

from conftest import build_flow_data, chain_edges, create_active_flow


def trigger_exit_flow(trigger_config, name="Ping flow", settings=None):
    return build_flow_data(
        name=name,
        nodes=[
            {"id": "trigger", "type": "trigger", "config": trigger_config},
            {"id": "done", "type": "exit", "config": {"reason": "done"}},
        ],
        edges=chain_edges("trigger", "done"),
        settings=settings
    )


def trigger_wait_flow(trigger_config, name="Waiting flow", settings=None):
    return build_flow_data(
        name=name,
        nodes=[
            {"id": "trigger", "type": "trigger", "config": trigger_config},
            {"id": "wait", "type": "delay", "config": {"kind": "fixed_duration", "durationMinutes": 600}},
            {"id": "done", "type": "exit"},
        ],
        edges=chain_edges("trigger", "wait", "done"),
        settings=settings
    )


def ping(user_id="u-1", **properties):
    return TriggerSignal(kind="event_received", user_id=user_id, event_name="ping", event_properties=properties)


def test_lifecycle_trigger_matching(services):
    trigger = services["trigger"]
    config = TriggerNodeConfig(kind="lifecycle_change", lifecycleFrom=["Active"], lifecycleTo=["AtRisk", "Churned"])

    def signal(from_state, to_state):
        return TriggerSignal(kind="lifecycle_change", user_id="u", from_state=from_state, to_state=to_state)

    assert trigger.matches_trigger(config, signal("Active", "AtRisk"))
    assert not trigger.matches_trigger(config, signal("Trial", "AtRisk"))
    assert not trigger.matches_trigger(config, signal("Active", "PowerUser"))
    assert not trigger.matches_trigger(config, ping())


def test_schedule_and_manual_signals_name_their_flow(services):
    trigger = services["trigger"]
    config = TriggerNodeConfig(kind="manual")

    assert trigger.matches_trigger(config, TriggerSignal(kind="manual", user_id="u", flow_id="f-1"), "f-1")
    assert not trigger.matches_trigger(config, TriggerSignal(kind="manual", user_id="u", flow_id="f-2"), "f-1")


@pytest.mark.asyncio
async def test_event_filters_use_event_properties(services):
    flow = await create_active_flow(services["flow"], trigger_exit_flow({
        "kind": "event_received",
        "eventName": "ping",
        "eventFilters": [{"field": "event.plan", "operator": "equals", "value": "pro"}],
    }))

    assert await services["trigger"].handle_signal(ping(plan="free")) == []
    created = await services["trigger"].handle_signal(ping(plan="pro"))

    assert [enrollment.flow_id for enrollment in created] == [flow.id]


@pytest.mark.asyncio
async def test_no_re_entry_blocks_after_completion(services):
    await create_active_flow(services["flow"], trigger_exit_flow({"kind": "event_received", "eventName": "ping"}))

    first = await services["trigger"].handle_signal(ping())
    second = await services["trigger"].handle_signal(ping())

    assert len(first) == 1
    assert first[0].status == "exited"
    assert second == []


@pytest.mark.asyncio
async def test_re_entry_cooldown(services, clock):
    flow = await create_active_flow(services["flow"], trigger_exit_flow({
        "kind": "event_received",
        "eventName": "ping",
        "allowReEntry": True,
        "reEntryCooldownMinutes": 60,
    }))
    assert len(await services["trigger"].handle_signal(ping())) == 1

    clock.advance(minutes=30)
    assert await services["trigger"].handle_signal(ping()) == []

    clock.advance(minutes=31)
    assert len(await services["trigger"].handle_signal(ping())) == 1
    assert len(await services["enrollment"].get_user_enrollments("u-1", flow.id)) == 2


@pytest.mark.asyncio
async def test_active_enrollment_blocks_re_entry(services):
    flow = await create_active_flow(services["flow"], trigger_wait_flow({
        "kind": "event_received", "eventName": "ping", "allowReEntry": True
    }))

    await services["trigger"].handle_signal(ping())
    assert await services["trigger"].handle_signal(ping()) == []
    assert len(await services["enrollment"].get_user_enrollments("u-1", flow.id)) == 1


@pytest.mark.asyncio
async def test_flows_are_matched_by_priority(services):
    low = await create_active_flow(services["flow"], trigger_exit_flow(
        {"kind": "event_received", "eventName": "ping"}, name="Low", settings={"priority": 1}
    ))
    high = await create_active_flow(services["flow"], trigger_exit_flow(
        {"kind": "event_received", "eventName": "ping"}, name="High", settings={"priority": 10}
    ))

    created = await services["trigger"].handle_signal(ping())

    assert [enrollment.flow_id for enrollment in created] == [high.id, low.id]


@pytest.mark.asyncio
async def test_inactive_flows_do_not_enroll(services):
    flow = await create_active_flow(services["flow"], trigger_exit_flow({"kind": "event_received", "eventName": "ping"}))
    await services["flow"].update_flow_status(flow.id, "paused")

    assert await services["trigger"].handle_signal(ping()) == []


@pytest.mark.asyncio
async def test_enrollment_cap(services):
    await create_active_flow(services["flow"], trigger_exit_flow(
        {"kind": "event_received", "eventName": "ping"}, settings={"enrollmentCap": 1}
    ))

    assert len(await services["trigger"].handle_signal(ping("u-1"))) == 1
    assert await services["trigger"].handle_signal(ping("u-2")) == []


@pytest.mark.asyncio
async def test_max_concurrent_enrollments(services):
    flow = await create_active_flow(services["flow"], trigger_wait_flow(
        {"kind": "event_received", "eventName": "ping"}, settings={"maxConcurrentEnrollments": 1}
    ))

    await services["trigger"].handle_signal(ping("u-1"))
    assert await services["trigger"].handle_signal(ping("u-2")) == []

    enrollment = (await services["enrollment"].get_flow_enrollments(flow.id))[0]
    await services["enrollment"].exit_enrollment(enrollment.id, "manual exit")
    assert len(await services["trigger"].handle_signal(ping("u-2"))) == 1


@pytest.mark.asyncio
async def test_enrollment_tags_are_added(services):
    await create_active_flow(services["flow"], trigger_exit_flow(
        {"kind": "event_received", "eventName": "ping"}, settings={"enrollmentTags": ["onboarding"]}
    ))

    await services["trigger"].handle_signal(ping())
    user = await services["user"].get_user_context("u-1")

    assert user.tags == ["onboarding"]


@pytest.mark.asyncio
async def test_lifecycle_update_enrolls_and_later_disqualifies(services):
    flow = await create_active_flow(services["flow"], trigger_wait_flow({
        "kind": "lifecycle_change", "lifecycleTo": ["AtRisk"]
    }))
    await services["user"].apply_user_update("u-1", lifecycle_state="Active")

    entered = await services["trigger"].handle_user_update("u-1", lifecycle_state="AtRisk")
    assert entered["lifecycle_changed"] is True
    assert len(entered["enrollments_created"]) == 1
    assert entered["enrollments_created"][0].current_node_id == "wait"

    await services["trigger"].handle_user_update("u-1", lifecycle_state="Active")
    enrollment = (await services["enrollment"].get_user_enrollments("u-1", flow.id))[0]

    assert enrollment.status == "exited"
    assert enrollment.exit_reason == "no longer matches entry criteria"


@pytest.mark.asyncio
async def test_lifecycle_signal_syncs_profile(services):
    await create_active_flow(services["flow"], trigger_wait_flow({
        "kind": "lifecycle_change", "lifecycleTo": ["AtRisk"]
    }))

    created = await services["trigger"].handle_signal(TriggerSignal(
        kind="lifecycle_change", user_id="u-1", from_state="Active", to_state="AtRisk"
    ))
    user = await services["user"].get_user_context("u-1")

    assert user.lifecycle_state == "AtRisk"
    assert created[0].status == "active"


@pytest.mark.asyncio
async def test_leaving_a_segment_disqualifies(services):
    flow = await create_active_flow(services["flow"], trigger_wait_flow({
        "kind": "segment_entry", "segmentId": "power-users"
    }))

    entered = await services["trigger"].handle_user_update("u-1", segments=["power-users"])
    assert len(entered["enrollments_created"]) == 1

    left = await services["trigger"].handle_user_update("u-1", segments=[])
    enrollment = (await services["enrollment"].get_user_enrollments("u-1", flow.id))[0]

    assert left["enrollments_exited"] == 1
    assert enrollment.status == "exited"
