import pytest

from services.flow_validation_service import FlowValidationService
from services.internal.integration_service import IntegrationService
from models.flow_data import FlowData

from conftest import ALL_CAPABILITIES, build_flow_data, chain_edges, scenario_flow_data


def flow_of(data) -> FlowData:
    return FlowData.model_validate(data)


@pytest.fixture
def validation_service(log_util):
    return FlowValidationService(
        log_util=log_util,
        integration_service=IntegrationService(log_util=log_util, available_capabilities=ALL_CAPABILITIES)
    )


def messages(issues, severity=None):
    return [issue.message for issue in issues if severity is None or issue.severity == severity]


def test_scenario_flow_has_no_blocking_issues(validation_service):
    flow = flow_of(scenario_flow_data())
    issues = validation_service.validate(flow.nodes, flow.edges)

    assert validation_service.blocking_issues(issues) == []
    # The notification branch simply ends
    assert messages(issues, "warning") == ["\"nudge\" has no outgoing connections"]


@pytest.mark.parametrize("trigger_count", [0, 1, 2, 3])
def test_trigger_cardinality(validation_service, trigger_count):
    nodes = [{"id": f"t{index}", "type": "trigger", "config": {"kind": "manual"}} for index in range(trigger_count)]
    nodes.append({"id": "done", "type": "exit"})
    edges = [{"id": f"e{index}", "source": f"t{index}", "target": "done"} for index in range(trigger_count)]
    flow = flow_of(build_flow_data(nodes, edges))

    errors = messages(validation_service.validate(flow.nodes, flow.edges), "error")

    cardinality_errors = [m for m in errors if m in ("Flow must have a trigger node", "Flow can only have one trigger node")]
    assert bool(cardinality_errors) == (trigger_count != 1)
    if trigger_count == 0:
        assert cardinality_errors == ["Flow must have a trigger node"]
    elif trigger_count > 1:
        assert cardinality_errors == ["Flow can only have one trigger node"]


def test_issues_follow_rule_order(validation_service):
    flow = flow_of(build_flow_data(
        nodes=[
            {"id": "orphan", "type": "delay", "label": "Orphan wait", "config": {"kind": "fixed_duration", "durationMinutes": 5}},
        ],
        edges=[]
    ))
    issues = validation_service.validate(flow.nodes, flow.edges)

    assert [issue.severity for issue in issues] == ["error", "warning", "error", "warning"]
    assert issues[0].message == "Flow must have a trigger node"
    assert issues[1].message.startswith("Flow has no exit node")
    assert issues[2].message == "\"Orphan wait\" has no incoming connections"
    assert issues[2].node_id == "orphan"
    assert issues[3].message == "\"Orphan wait\" has no outgoing connections"


def test_split_percentages_must_sum_to_100(validation_service):
    flow = flow_of(build_flow_data(
        nodes=[
            {"id": "t", "type": "trigger", "config": {"kind": "manual"}},
            {"id": "s", "type": "split", "label": "AB", "config": {"variants": [
                {"id": "a", "percentage": 60}, {"id": "b", "percentage": 30}
            ]}},
            {"id": "x", "type": "exit"},
        ],
        edges=chain_edges("t", "s", "x")
    ))

    errors = messages(validation_service.validate(flow.nodes, flow.edges), "error")

    assert errors == ["\"AB\" split percentages sum to 90, expected 100"]


def test_goto_target_must_exist(validation_service):
    flow = flow_of(build_flow_data(
        nodes=[
            {"id": "t", "type": "trigger", "config": {"kind": "manual"}},
            {"id": "g", "type": "goto", "label": "Again", "config": {"targetNodeId": "nowhere"}},
        ],
        edges=chain_edges("t", "g")
    ))

    errors = messages(validation_service.validate(flow.nodes, flow.edges), "error")

    assert "\"Again\" jumps to a node that does not exist" in errors


def test_missing_capability_is_an_integration_issue(log_util):
    service = FlowValidationService(
        log_util=log_util,
        integration_service=IntegrationService(log_util=log_util, available_capabilities=["event_tracking", "user_tracking"])
    )
    flow = flow_of(scenario_flow_data())

    issues = service.validate(flow.nodes, flow.edges)
    integration = [issue for issue in issues if issue.severity == "integration"]

    assert {issue.node_id for issue in integration} == {"welcome", "nudge"}
    assert service.build_report(flow.nodes, flow.edges).can_activate is False
    # Skipping integration checks leaves only structural findings
    assert service.build_report(flow.nodes, flow.edges, check_integrations=False).can_activate is True


def test_warnings_never_block(validation_service):
    flow = flow_of(build_flow_data(
        nodes=[
            {"id": "t", "type": "trigger", "config": {"kind": "manual"}},
            {"id": "tag", "type": "action", "config": {"kind": "add_tag", "tag": "vip"}},
        ],
        edges=chain_edges("t", "tag")
    ))

    report = validation_service.build_report(flow.nodes, flow.edges)

    assert report.issues
    assert all(issue.severity == "warning" for issue in report.issues)
    assert report.can_activate is True
