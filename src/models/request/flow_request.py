from pydantic import BaseModel, Field
from typing import Optional, List

from models.flow_node_data import FlowNode
from models.flow_edge_data import FlowEdge
from models.flow_settings_data import FlowSettings, FlowVariable
from models.flow_data import FlowStatus


class FlowCreateRequest(BaseModel):
    """
    Request model for creating a flow. New flows always start as drafts.
    """
    name: str
    description: str = ""
    nodes: List[FlowNode] = []
    edges: List[FlowEdge] = []
    variables: List[FlowVariable] = []
    settings: FlowSettings = Field(default_factory=FlowSettings)

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Trial activation nurture",
                "nodes": [
                    {"id": "trigger", "type": "trigger", "label": "Trial activated",
                     "config": {"kind": "event_received", "eventName": "trial_activated"}},
                    {"id": "welcome", "type": "action", "label": "Welcome email",
                     "config": {"kind": "send_email", "emailSubject": "Welcome, {{user.name}}"}},
                    {"id": "done", "type": "exit", "label": "Done"}
                ],
                "edges": [
                    {"id": "e1", "source": "trigger", "target": "welcome"},
                    {"id": "e2", "source": "welcome", "target": "done"}
                ]
            }
        }


class FlowUpdateRequest(BaseModel):
    """
    Omitted fields keep their current value. nodes/edges replace the whole list.
    """
    name: Optional[str] = None
    description: Optional[str] = None
    nodes: Optional[List[FlowNode]] = None
    edges: Optional[List[FlowEdge]] = None
    variables: Optional[List[FlowVariable]] = None
    settings: Optional[FlowSettings] = None
    expected_version: Optional[int] = Field(default=None, description="Version the edit was based on; stale versions are rejected with 409")


class FlowStatusRequest(BaseModel):
    status: FlowStatus
    expected_version: Optional[int] = None


class FlowValidateRequest(BaseModel):
    nodes: List[FlowNode] = []
    edges: List[FlowEdge] = []
    check_integrations: bool = True
