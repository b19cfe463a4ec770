from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, Literal
from datetime import datetime
import uuid


class StoredEvent(BaseModel):
    """
    A behavioral event accepted by the ingestor. The message_id is the
    idempotency key producers use for at-least-once delivery.
    """
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex}", alias="messageId")
    user_id: str = Field(..., alias="userId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    event: str
    properties: Dict[str, Any] = {}
    context: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    received_at: datetime = Field(default_factory=datetime.utcnow, alias="receivedAt")


class IngestResult(BaseModel):
    status: Literal["ingested", "duplicate"]
    message_id: str
    enrollments_created: int = 0
    enrollments_resumed: int = 0
    enrollments_exited: int = 0


class BatchIngestResult(BaseModel):
    ingested: int = 0
    duplicates: int = 0
    enrollments_created: int = 0
