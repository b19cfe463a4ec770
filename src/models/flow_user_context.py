from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


class FlowUserContext(BaseModel):
    """
    User profile consulted by conditions, entry criteria and actions.
    Fed by user signals and mutated by tag/property actions.
    """
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    lifecycle_state: Optional[str] = None
    previous_state: Optional[str] = None
    account_id: Optional[str] = None
    account: Dict[str, Any] = {}
    properties: Dict[str, Any] = {}
    tags: List[str] = []
    segments: List[str] = []
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def user_fields(self) -> Dict[str, Any]:
        """
        Flat view used to resolve "user.<field>" references.
        Custom properties are visible but cannot shadow the standard fields.
        """
        fields: Dict[str, Any] = dict(self.properties)
        fields.update({
            "id": self.user_id,
            "userId": self.user_id,
            "email": self.email,
            "name": self.name,
            "lifecycleState": self.lifecycle_state,
            "previousState": self.previous_state,
            "accountId": self.account_id,
            "tags": self.tags,
            "segments": self.segments,
        })
        return fields
