import pytest

from exceptions.flow_exception import (
    FlowNotFoundException,
    FlowValidationException,
    FlowVersionConflictException,
    FlowServiceException,
    FlowGraphException
)
from models.flow_trigger_data import TriggerSignal

from conftest import build_flow_data, chain_edges, create_active_flow, scenario_flow_data


@pytest.mark.asyncio
async def test_new_flows_start_as_drafts(services):
    data = scenario_flow_data()
    data["status"] = "active"

    flow = await services["flow"].create_flow(data)

    assert flow.id
    assert flow.status == "draft"
    assert flow.version == 1


@pytest.mark.asyncio
async def test_invalid_graph_is_rejected_at_save(services):
    data = scenario_flow_data()
    data["edges"].append({"id": "broken", "source": "done", "target": "nowhere"})

    with pytest.raises(FlowGraphException) as exc_info:
        await services["flow"].create_flow(data)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_drafts_save_with_blocking_issues(services):
    flow = await services["flow"].create_flow(build_flow_data(nodes=[], edges=[]))
    report = await services["flow"].validate_flow_by_id(flow.id)

    assert report.can_save is True
    assert report.can_activate is False


@pytest.mark.asyncio
async def test_update_bumps_version_and_rejects_stale_saves(services):
    flow = await services["flow"].create_flow(scenario_flow_data())

    updated = await services["flow"].update_flow(flow.id, {"name": "Renamed"}, expected_version=1)
    assert updated.version == 2
    assert updated.name == "Renamed"
    assert updated.nodes == flow.nodes

    with pytest.raises(FlowVersionConflictException) as exc_info:
        await services["flow"].update_flow(flow.id, {"name": "Stale"}, expected_version=1)
    assert exc_info.value.status_code == 409
    assert exc_info.value.current_version == 2


@pytest.mark.asyncio
async def test_activation_is_blocked_by_errors(services):
    data = scenario_flow_data()
    data["edges"] = [edge for edge in data["edges"] if edge["target"] != "welcome"]
    flow = await services["flow"].create_flow(data)

    with pytest.raises(FlowValidationException) as exc_info:
        await services["flow"].update_flow_status(flow.id, "active")

    assert exc_info.value.status_code == 400
    assert [issue.node_id for issue in exc_info.value.issues] == ["welcome"]
    assert (await services["flow"].get_flow_detail(flow.id)).status == "draft"


@pytest.mark.asyncio
async def test_activation_is_blocked_by_missing_integrations(services):
    services["integration"].available_capabilities.discard("push_notification")
    flow = await services["flow"].create_flow(scenario_flow_data())

    with pytest.raises(FlowValidationException) as exc_info:
        await services["flow"].update_flow_status(flow.id, "active")

    assert [issue.severity for issue in exc_info.value.issues] == ["integration"]


@pytest.mark.asyncio
async def test_warnings_do_not_block_activation(services):
    # No exit node and an action without outgoing edges: warnings only
    flow = await create_active_flow(services["flow"], build_flow_data(
        nodes=[
            {"id": "t", "type": "trigger", "config": {"kind": "manual"}},
            {"id": "tag", "type": "action", "config": {"kind": "add_tag", "tag": "vip"}},
        ],
        edges=chain_edges("t", "tag")
    ))

    assert flow.status == "active"
    assert flow.published_at is not None


@pytest.mark.asyncio
async def test_active_flow_edits_must_stay_activatable(services):
    flow = await create_active_flow(services["flow"], scenario_flow_data())

    with pytest.raises(FlowValidationException):
        await services["flow"].update_flow(flow.id, {"nodes": [], "edges": []})


@pytest.mark.asyncio
async def test_status_transitions(services):
    flow = await create_active_flow(services["flow"], scenario_flow_data())

    paused = await services["flow"].update_flow_status(flow.id, "paused")
    archived = await services["flow"].update_flow_status(flow.id, "archived")

    assert paused.status == "paused"
    assert archived.status == "archived"
    assert archived.archived_at is not None
    with pytest.raises(FlowServiceException) as exc_info:
        await services["flow"].update_flow_status(flow.id, "active")
    assert exc_info.value.status_code == 400
    with pytest.raises(FlowServiceException):
        await services["flow"].update_flow(flow.id, {"name": "Too late"})


@pytest.mark.asyncio
async def test_list_filters_by_status(services):
    draft = await services["flow"].create_flow(scenario_flow_data())
    active = await create_active_flow(services["flow"], scenario_flow_data())

    assert [flow.id for flow in await services["flow"].get_flows_list(status="draft")] == [draft.id]
    assert [flow.id for flow in await services["flow"].get_flows_list(status="active")] == [active.id]
    assert len(await services["flow"].get_flows_list()) == 2


@pytest.mark.asyncio
async def test_duplicate_is_a_fresh_draft(services):
    flow = await create_active_flow(services["flow"], build_flow_data(
        nodes=[{"id": "t", "type": "trigger", "config": {"kind": "manual"}}, {"id": "x", "type": "exit"}],
        edges=chain_edges("t", "x")
    ))
    await services["trigger"].handle_signal(TriggerSignal(kind="manual", user_id="u-1", flow_id=flow.id))

    copy = await services["flow"].duplicate_flow(flow.id)

    assert copy.id != flow.id
    assert copy.name.endswith("(Copy)")
    assert copy.status == "draft"
    assert copy.version == 1
    assert copy.metrics.total_enrolled == 0
    assert copy.nodes == flow.nodes


@pytest.mark.asyncio
async def test_delete_cascades_enrollments(services):
    flow = await create_active_flow(services["flow"], build_flow_data(
        nodes=[{"id": "t", "type": "trigger", "config": {"kind": "manual"}}, {"id": "x", "type": "exit"}],
        edges=chain_edges("t", "x")
    ))
    await services["trigger"].handle_signal(TriggerSignal(kind="manual", user_id="u-1", flow_id=flow.id))

    await services["flow"].delete_flow(flow.id)

    assert await services["enrollment"].get_user_enrollments("u-1") == []
    with pytest.raises(FlowNotFoundException):
        await services["flow"].get_flow_detail(flow.id)
    with pytest.raises(FlowNotFoundException):
        await services["flow"].delete_flow(flow.id)
