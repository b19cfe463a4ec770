from pydantic import BaseModel, Field
from typing import Optional, List, Literal


class ValidationIssue(BaseModel):
    """
    A single finding of the flow validation engine.
    Issues are returned as data so the editor can render them inline.
    """
    severity: Literal["error", "warning", "integration"] = Field(..., description="error and integration block activation, warning never blocks")
    message: str
    node_id: Optional[str] = Field(default=None, description="Node the issue points at, if any")


class ValidationReport(BaseModel):
    issues: List[ValidationIssue] = []
    can_save: bool = True
    can_activate: bool = True
