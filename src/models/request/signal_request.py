from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List


class UserSignalRequest(BaseModel):
    """
    Profile update for one user. A changed lifecycleState emits a
    lifecycle_change signal; newly joined segments emit segment_entry.
    """
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    email: Optional[str] = None
    name: Optional[str] = None
    lifecycle_state: Optional[str] = Field(default=None, alias="lifecycleState")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    account: Optional[Dict[str, Any]] = None
    properties: Optional[Dict[str, Any]] = None
    segments: Optional[List[str]] = None
