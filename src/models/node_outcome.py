from pydantic import BaseModel
from typing import Optional, Dict, Any, Literal
from datetime import datetime


class NodeOutcome(BaseModel):
    """
    Result of evaluating one internal node for an enrollment.

    advance: follow the outgoing edge (optionally a named handle)
    jump:    move straight to target_node_id (goto)
    wait:    stay on the node until wait_until
    exit:    terminate as exited
    error:   terminate as error
    """
    action: Literal["advance", "jump", "wait", "exit", "error"]
    handle: Optional[str] = None
    target_node_id: Optional[str] = None
    wait_until: Optional[datetime] = None
    waiting_for_event: Optional[str] = None
    reason: Optional[str] = None
    details: Optional[str] = None
    loop_counts: Optional[Dict[str, int]] = None
    variables: Dict[str, Any] = {}
