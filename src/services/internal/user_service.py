from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_store import FlowStore

# Models
from models.flow_user_context import FlowUserContext


class UserService:
    """Service for handling user profile related operations."""
    def __init__(self, log_util: LogUtil, flow_store: FlowStore):
        self.log_util = log_util
        self.flow_store = flow_store

    async def get_user_context(self, user_id: str, account_id: Optional[str] = None) -> FlowUserContext:
        """
        Stored profile of a user, or an empty profile for users the
        service has not seen yet.
        """
        profile = await self.flow_store.get_user_profile(user_id)
        if profile is None:
            return FlowUserContext(user_id=user_id, account_id=account_id)
        if account_id and not profile.account_id:
            profile = profile.model_copy(update={"account_id": account_id})
        return profile

    async def apply_user_update(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        lifecycle_state: Optional[str] = None,
        account_id: Optional[str] = None,
        account: Optional[Dict[str, Any]] = None,
        properties: Optional[Dict[str, Any]] = None,
        segments: Optional[List[str]] = None
    ) -> Tuple[FlowUserContext, FlowUserContext]:
        """
        Merge a profile update. Returns (before, after) so callers can detect
        lifecycle transitions and segment entries.
        """
        before = await self.get_user_context(user_id, account_id)
        update: Dict[str, Any] = {"updated_at": datetime.utcnow()}
        if email is not None:
            update["email"] = email
        if name is not None:
            update["name"] = name
        if account_id is not None:
            update["account_id"] = account_id
        if account is not None:
            update["account"] = {**before.account, **account}
        if properties is not None:
            update["properties"] = {**before.properties, **properties}
        if segments is not None:
            update["segments"] = list(dict.fromkeys(segments))
        if lifecycle_state is not None and lifecycle_state != before.lifecycle_state:
            update["previous_state"] = before.lifecycle_state
            update["lifecycle_state"] = lifecycle_state

        after = before.model_copy(update=update, deep=True)
        await self.flow_store.upsert_user_profile(after)
        return before, after

    async def update_properties(self, user_id: str, properties: Dict[str, Any]) -> FlowUserContext:
        _, after = await self.apply_user_update(user_id, properties=properties)
        return after

    async def add_tags(self, user_id: str, tags: List[str]) -> FlowUserContext:
        profile = await self.get_user_context(user_id)
        merged = list(dict.fromkeys(list(profile.tags) + [tag for tag in tags if tag]))
        if merged == profile.tags:
            return profile
        updated = profile.model_copy(update={"tags": merged, "updated_at": datetime.utcnow()})
        await self.flow_store.upsert_user_profile(updated)
        return updated

    async def remove_tag(self, user_id: str, tag: str) -> FlowUserContext:
        profile = await self.get_user_context(user_id)
        if tag not in profile.tags:
            return profile
        updated = profile.model_copy(update={
            "tags": [existing for existing in profile.tags if existing != tag],
            "updated_at": datetime.utcnow()
        })
        await self.flow_store.upsert_user_profile(updated)
        return updated
