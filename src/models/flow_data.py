from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Literal
from datetime import datetime

from models.flow_node_data import FlowNode, TriggerNode
from models.flow_edge_data import FlowEdge
from models.flow_settings_data import FlowSettings, FlowMetrics, FlowVariable

FlowStatus = Literal["draft", "active", "paused", "archived"]


class FlowData(BaseModel):
    """
    A saved automation graph. Treated as an immutable value: edits build a
    new instance and saves replace the stored flow wholesale.
    """
    id: Optional[str] = None
    name: str
    description: str = ""
    status: FlowStatus = Field(default="draft", description="Flow status: draft, active, paused, archived")
    version: int = Field(default=0, ge=0, description="Incremented on every save")
    nodes: List[FlowNode] = []
    edges: List[FlowEdge] = []
    variables: List[FlowVariable] = []
    settings: FlowSettings = Field(default_factory=FlowSettings)
    metrics: FlowMetrics = Field(default_factory=FlowMetrics)
    created_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)
    published_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_graph_references(self) -> "FlowData":
        node_ids = set()
        for node in self.nodes:
            if node.id in node_ids:
                raise ValueError(f"Duplicate node id: {node.id}")
            node_ids.add(node.id)

        edge_ids = set()
        for edge in self.edges:
            if edge.id in edge_ids:
                raise ValueError(f"Duplicate edge id: {edge.id}")
            edge_ids.add(edge.id)
            if edge.source not in node_ids:
                raise ValueError(f"Edge {edge.id} references unknown source node {edge.source}")
            if edge.target not in node_ids:
                raise ValueError(f"Edge {edge.id} references unknown target node {edge.target}")
        return self

    # Graph traversal helpers

    def find_node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def find_trigger_node(self) -> Optional[TriggerNode]:
        for node in self.nodes:
            if node.type == "trigger":
                return node
        return None

    def outgoing_edges(self, node_id: str) -> List[FlowEdge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming_edges(self, node_id: str) -> List[FlowEdge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def find_next_node(self, node_id: str, handle: Optional[str] = None) -> Optional[FlowNode]:
        """
        Resolve the node reached from node_id.

        With a handle, the edge carrying that sourceHandle wins and an
        unlabelled edge is the fallback. Without one, unlabelled edges are
        preferred over labelled ones.
        """
        edges = self.outgoing_edges(node_id)
        if not edges:
            return None

        unlabelled = [edge for edge in edges if not edge.sourceHandle]
        if handle:
            matching = [edge for edge in edges if edge.sourceHandle == handle]
            chosen = matching[0] if matching else (unlabelled[0] if unlabelled else None)
        else:
            chosen = unlabelled[0] if unlabelled else edges[0]

        if chosen is None:
            return None
        return self.find_node(chosen.target)
