from pydantic import BaseModel, Field
from typing import Optional, Dict, Any

from models.flow_user_context import FlowUserContext


class ActionDispatchContext(BaseModel):
    """
    Resolved user context handed to the action dispatcher with an action config
    """
    user: FlowUserContext
    flow_id: str
    enrollment_id: str
    node_id: str
    variables: Dict[str, Any] = {}


class DispatchResult(BaseModel):
    ok: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict, description="Flow variables produced by the action")
