from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Literal
from datetime import datetime
import uuid

EnrollmentStatus = Literal["active", "completed", "exited", "error"]

TERMINAL_STATUSES = ("completed", "exited", "error")

# Audit trail cap per enrollment
MAX_HISTORY_ENTRIES = 200


def generate_enrollment_id() -> str:
    return f"enr_{uuid.uuid4().hex}"


class EnrollmentHistoryEntry(BaseModel):
    node_id: str
    node_type: str
    action: Literal["entered", "completed", "skipped", "failed", "waiting"]
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    details: Optional[str] = None


class FlowEnrollmentData(BaseModel):
    """
    One user's traversal of a flow. Mutated only by the enrollment engine,
    always through a compare-and-set on (status, current_node_id, revision).
    """
    id: str = Field(default_factory=generate_enrollment_id)
    flow_id: str
    flow_version: int = 0
    user_id: str
    account_id: Optional[str] = None
    status: EnrollmentStatus = "active"
    current_node_id: str
    entered_at: datetime = Field(default_factory=datetime.utcnow)
    next_process_at: Optional[datetime] = None
    loop_counts: Dict[str, int] = {}
    variables: Dict[str, Any] = {}
    event_properties: Dict[str, Any] = Field(default_factory=dict, description="Properties of the event that triggered the enrollment")
    last_error: Optional[str] = None
    error_node_id: Optional[str] = None
    exit_reason: Optional[str] = None
    attempts: int = Field(default=0, description="Dispatch attempts made at the current node")
    wait_until: Optional[datetime] = Field(default=None, description="Deadline of the delay the enrollment is parked on")
    waiting_for_event: Optional[str] = None
    completed_at: Optional[datetime] = Field(default=None, description="Time the enrollment reached a terminal status")
    last_processed_at: Optional[datetime] = None
    revision: int = Field(default=0, description="Compare-and-set counter, bumped on every write")
    history: List[EnrollmentHistoryEntry] = []

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_history(self, entry: EnrollmentHistoryEntry) -> List[EnrollmentHistoryEntry]:
        return (self.history + [entry])[-MAX_HISTORY_ENTRIES:]
