from pydantic import BaseModel
from typing import Optional


class FlowEdge(BaseModel):
    id: str
    source: str  # source node id
    target: str  # target node id
    sourceHandle: Optional[str] = None  # "yes" / "no" for conditions, "variant-<id>" for splits
    targetHandle: Optional[str] = None
    label: Optional[str] = None
