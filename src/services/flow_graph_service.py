"""
Flow Graph Service
Edit-time helpers for building flow graphs. Every edit returns a new
FlowData; the input flow is never modified.
"""
from typing import Optional, List, Dict, Any
import string
import uuid

from pydantic import TypeAdapter, ValidationError

from utils.log_utils import LogUtil
from exceptions.flow_exception import FlowGraphException
from models.flow_data import FlowData
from models.flow_edge_data import FlowEdge
from models.flow_node_data import FlowNode, NodeType, SplitVariant

# Minimum number of variants a split keeps
MIN_SPLIT_VARIANTS = 2

_node_adapter = TypeAdapter(FlowNode)


def variant_handle(variant_id: str) -> str:
    return f"variant-{variant_id}"


class FlowGraphService:
    def __init__(self, log_util: LogUtil):
        self.log_util = log_util

    def default_config(self, node_type: NodeType, kind: Optional[str] = None) -> Dict[str, Any]:
        """
        Starting config of a freshly placed node
        """
        if node_type == "trigger":
            return {"kind": kind or "lifecycle_change", "allowReEntry": False}
        if node_type == "action":
            return {"kind": kind or "send_email"}
        if node_type in ("condition", "filter"):
            return {"logic": "AND", "rules": []}
        if node_type == "delay":
            return {"kind": kind or "fixed_duration", "durationMinutes": 60}
        if node_type == "split":
            return {
                "variants": [
                    {"id": "a", "label": "A", "percentage": 50},
                    {"id": "b", "label": "B", "percentage": 50},
                ],
                "winnerMetric": "conversion_rate",
                "autoPickAfter": 200,
            }
        if node_type == "goto":
            return {"targetNodeId": "", "maxLoops": 3}
        if node_type == "exit":
            return {"reason": ""}
        raise FlowGraphException(message=f"Unknown node type: {node_type}")

    def default_node(
        self,
        node_type: NodeType,
        node_id: Optional[str] = None,
        label: Optional[str] = None,
        kind: Optional[str] = None
    ) -> FlowNode:
        try:
            return _node_adapter.validate_python({
                "id": node_id or f"{node_type}_{uuid.uuid4().hex[:8]}",
                "type": node_type,
                "label": label if label is not None else node_type.capitalize(),
                "config": self.default_config(node_type, kind),
            })
        except ValidationError as e:
            raise FlowGraphException(message=f"Invalid {node_type} node: {str(e)}")

    def _rebuild(self, flow: FlowData, nodes: List[FlowNode], edges: List[FlowEdge]) -> FlowData:
        # Re-validating enforces unique ids and edge references
        data = flow.model_dump()
        data["nodes"] = [node.model_dump() for node in nodes]
        data["edges"] = [edge.model_dump() for edge in edges]
        try:
            return FlowData.model_validate(data)
        except ValidationError as e:
            raise FlowGraphException(message=str(e))

    def _require_node(self, flow: FlowData, node_id: str) -> FlowNode:
        node = flow.find_node(node_id)
        if node is None:
            raise FlowGraphException(message=f"Node {node_id} not found in flow")
        return node

    def add_node(self, flow: FlowData, node: FlowNode) -> FlowData:
        if flow.find_node(node.id) is not None:
            raise FlowGraphException(message=f"Node id {node.id} already exists in flow")
        return self._rebuild(flow, list(flow.nodes) + [node], list(flow.edges))

    def remove_node(self, flow: FlowData, node_id: str) -> FlowData:
        """
        Remove a node together with every edge touching it
        """
        self._require_node(flow, node_id)
        nodes = [node for node in flow.nodes if node.id != node_id]
        edges = [edge for edge in flow.edges if edge.source != node_id and edge.target != node_id]
        return self._rebuild(flow, nodes, edges)

    def connect(
        self,
        flow: FlowData,
        source: str,
        target: str,
        source_handle: Optional[str] = None,
        label: Optional[str] = None,
        edge_id: Optional[str] = None
    ) -> FlowData:
        self._require_node(flow, source)
        self._require_node(flow, target)
        if source == target:
            raise FlowGraphException(message="A node cannot connect to itself; use a goto node to loop")
        for edge in flow.edges:
            if edge.source == source and edge.target == target and edge.sourceHandle == source_handle:
                raise FlowGraphException(message=f"Nodes {source} and {target} are already connected")

        edge = FlowEdge(
            id=edge_id or f"edge_{uuid.uuid4().hex[:12]}",
            source=source,
            target=target,
            sourceHandle=source_handle,
            label=label
        )
        return self._rebuild(flow, list(flow.nodes), list(flow.edges) + [edge])

    def disconnect(self, flow: FlowData, edge_id: str) -> FlowData:
        edges = [edge for edge in flow.edges if edge.id != edge_id]
        if len(edges) == len(flow.edges):
            raise FlowGraphException(message=f"Edge {edge_id} not found in flow")
        return self._rebuild(flow, list(flow.nodes), edges)

    def _require_split(self, flow: FlowData, node_id: str) -> FlowNode:
        node = self._require_node(flow, node_id)
        if node.type != "split":
            raise FlowGraphException(message=f"Node {node_id} is not a split node")
        return node

    def add_split_variant(self, flow: FlowData, node_id: str, label: Optional[str] = None, percentage: float = 0) -> FlowData:
        """
        Append a variant with the next free letter id (a, b, c, ...)
        """
        node = self._require_split(flow, node_id)
        used = {variant.id for variant in node.config.variants}
        variant_id = next((letter for letter in string.ascii_lowercase if letter not in used), None)
        if variant_id is None:
            variant_id = uuid.uuid4().hex[:6]

        variant = SplitVariant(id=variant_id, label=label or variant_id.upper(), percentage=percentage)
        config = node.config.model_copy(update={"variants": list(node.config.variants) + [variant]})
        updated = node.model_copy(update={"config": config})
        nodes = [updated if n.id == node_id else n for n in flow.nodes]
        return self._rebuild(flow, nodes, list(flow.edges))

    def remove_split_variant(self, flow: FlowData, node_id: str, variant_id: str) -> FlowData:
        """
        Remove a variant and the edges leaving through its handle
        """
        node = self._require_split(flow, node_id)
        variants = [variant for variant in node.config.variants if variant.id != variant_id]
        if len(variants) == len(node.config.variants):
            raise FlowGraphException(message=f"Variant {variant_id} not found on split {node_id}")
        if len(variants) < MIN_SPLIT_VARIANTS:
            raise FlowGraphException(message=f"A split needs at least {MIN_SPLIT_VARIANTS} variants")

        update: Dict[str, Any] = {"variants": variants}
        if node.config.winnerId == variant_id:
            update["winnerId"] = None
        updated = node.model_copy(update={"config": node.config.model_copy(update=update)})
        nodes = [updated if n.id == node_id else n for n in flow.nodes]
        handle = variant_handle(variant_id)
        edges = [edge for edge in flow.edges if not (edge.source == node_id and edge.sourceHandle == handle)]
        return self._rebuild(flow, nodes, edges)
