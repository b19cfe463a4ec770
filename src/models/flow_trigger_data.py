from pydantic import BaseModel, Field
from typing import Optional, Dict, Any

from models.flow_node_data import TriggerKind


class TriggerSignal(BaseModel):
    """
    A signal that may fire flow triggers for one user: an ingested event,
    a lifecycle transition, a segment entry, an inbound webhook, a schedule
    tick or a manual enrollment.
    """
    kind: TriggerKind
    user_id: str
    account_id: Optional[str] = None
    flow_id: Optional[str] = Field(default=None, description="Restricts schedule/manual signals to one flow")
    event_name: Optional[str] = None
    event_properties: Dict[str, Any] = {}
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    segment_id: Optional[str] = None
    webhook_path: Optional[str] = None
    date_property: Optional[str] = None
