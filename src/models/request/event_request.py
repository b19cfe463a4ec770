from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime

from models.event_data import StoredEvent


class EventBatchRequest(BaseModel):
    """
    Batch of events as sent by the SDK
    """
    model_config = ConfigDict(populate_by_name=True)

    batch: List[StoredEvent] = Field(..., min_length=1)
    sent_at: Optional[datetime] = Field(default=None, alias="sentAt")
