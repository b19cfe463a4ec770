import pytest

from services.flow_graph_service import FlowGraphService, variant_handle
from exceptions.flow_exception import FlowGraphException
from models.flow_data import FlowData


@pytest.fixture
def graph_service(log_util):
    return FlowGraphService(log_util=log_util)


@pytest.fixture
def split_flow(graph_service):
    flow = FlowData(name="Split test")
    flow = graph_service.add_node(flow, graph_service.default_node("trigger", node_id="t", kind="manual"))
    flow = graph_service.add_node(flow, graph_service.default_node("split", node_id="s"))
    flow = graph_service.add_node(flow, graph_service.default_node("exit", node_id="xa"))
    flow = graph_service.add_node(flow, graph_service.default_node("exit", node_id="xb"))
    flow = graph_service.connect(flow, "t", "s")
    flow = graph_service.connect(flow, "s", "xa", source_handle=variant_handle("a"))
    flow = graph_service.connect(flow, "s", "xb", source_handle=variant_handle("b"))
    return flow


def test_default_nodes_carry_default_config(graph_service):
    delay = graph_service.default_node("delay", node_id="d")
    split = graph_service.default_node("split", node_id="s")

    assert delay.config.kind == "fixed_duration"
    assert delay.config.durationMinutes == 60
    assert [variant.percentage for variant in split.config.variants] == [50, 50]


def test_edits_return_new_flows(graph_service, split_flow):
    updated = graph_service.add_node(split_flow, graph_service.default_node("exit", node_id="extra"))

    assert updated.find_node("extra") is not None
    assert split_flow.find_node("extra") is None


def test_add_node_rejects_duplicate_ids(graph_service, split_flow):
    with pytest.raises(FlowGraphException):
        graph_service.add_node(split_flow, graph_service.default_node("exit", node_id="xa"))


def test_remove_node_cascades_edges(graph_service, split_flow):
    updated = graph_service.remove_node(split_flow, "s")

    assert updated.find_node("s") is None
    assert all(edge.source != "s" and edge.target != "s" for edge in updated.edges)
    assert updated.edges == []


def test_connect_rejects_unknown_nodes_self_loops_and_duplicates(graph_service, split_flow):
    with pytest.raises(FlowGraphException):
        graph_service.connect(split_flow, "t", "missing")
    with pytest.raises(FlowGraphException):
        graph_service.connect(split_flow, "t", "t")
    with pytest.raises(FlowGraphException):
        graph_service.connect(split_flow, "t", "s")


def test_disconnect(graph_service, split_flow):
    edge_id = split_flow.outgoing_edges("t")[0].id
    updated = graph_service.disconnect(split_flow, edge_id)

    assert updated.outgoing_edges("t") == []
    with pytest.raises(FlowGraphException):
        graph_service.disconnect(updated, edge_id)


def test_add_split_variant_uses_next_free_letter(graph_service, split_flow):
    updated = graph_service.add_split_variant(split_flow, "s", percentage=0)

    assert [variant.id for variant in updated.find_node("s").config.variants] == ["a", "b", "c"]


def test_remove_split_variant_drops_its_edges(graph_service, split_flow):
    flow = graph_service.add_split_variant(split_flow, "s")
    flow = graph_service.add_node(flow, graph_service.default_node("exit", node_id="xc"))
    flow = graph_service.connect(flow, "s", "xc", source_handle=variant_handle("c"))

    updated = graph_service.remove_split_variant(flow, "s", "c")

    assert [variant.id for variant in updated.find_node("s").config.variants] == ["a", "b"]
    assert all(edge.sourceHandle != variant_handle("c") for edge in updated.edges)


def test_split_keeps_two_variants(graph_service, split_flow):
    with pytest.raises(FlowGraphException):
        graph_service.remove_split_variant(split_flow, "s", "a")


def test_variant_edits_require_a_split(graph_service, split_flow):
    with pytest.raises(FlowGraphException):
        graph_service.add_split_variant(split_flow, "t")
