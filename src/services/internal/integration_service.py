from typing import Optional, Dict, Iterable
from pydantic import BaseModel

# Utils
from utils.log_utils import LogUtil

# Models
from models.flow_node_data import FlowNode


class CapabilityRequirement(BaseModel):
    capability: str
    category: str
    description: str


# Node key -> capability the installation must provide for the node to run
CAPABILITY_MAP: Dict[str, CapabilityRequirement] = {
    # Triggers
    "trigger:lifecycle_change": CapabilityRequirement(capability="user_tracking", category="sdk", description="SDK must be installed to track lifecycle state changes"),
    "trigger:event_received": CapabilityRequirement(capability="event_tracking", category="sdk", description="SDK must be installed to receive product events"),
    "trigger:segment_entry": CapabilityRequirement(capability="user_tracking", category="sdk", description="SDK must be installed to evaluate segment membership"),
    "trigger:webhook_received": CapabilityRequirement(capability="inbound_webhook", category="webhook", description="An inbound webhook endpoint must be configured"),

    # Actions
    "action:send_email": CapabilityRequirement(capability="email_send", category="email", description="Email provider must be configured to send emails"),
    "action:send_webhook": CapabilityRequirement(capability="outbound_webhook", category="webhook", description="Webhook URL must be configured"),
    "action:update_user": CapabilityRequirement(capability="user_tracking", category="sdk", description="SDK must be installed to update user properties"),
    "action:add_tag": CapabilityRequirement(capability="user_tracking", category="sdk", description="SDK must be installed to manage user tags"),
    "action:remove_tag": CapabilityRequirement(capability="user_tracking", category="sdk", description="SDK must be installed to manage user tags"),
    "action:api_call": CapabilityRequirement(capability="outbound_api", category="webhook", description="External API endpoint must be configured"),
    "action:send_notification": CapabilityRequirement(capability="push_notification", category="sdk", description="SDK with push notification support must be configured"),

    # Conditions
    "condition:user_property": CapabilityRequirement(capability="user_tracking", category="sdk", description="SDK must be installed to read user properties"),
    "condition:event_count": CapabilityRequirement(capability="event_tracking", category="sdk", description="SDK must be installed to count user events"),
    "condition:account_property": CapabilityRequirement(capability="account_tracking", category="sdk", description="SDK must be installed with account (group) tracking"),
}


class IntegrationService:
    """Service answering whether this installation can run a given node."""
    def __init__(self, log_util: LogUtil, available_capabilities: Iterable[str]):
        self.log_util = log_util
        self.available_capabilities = set(available_capabilities)

    @staticmethod
    def node_key(node: FlowNode) -> Optional[str]:
        """
        Capability lookup key of a node, e.g. "trigger:lifecycle_change".
        Conditions are keyed by the namespace of their first rule field.
        """
        if node.type == "trigger":
            return f"trigger:{node.config.kind}"
        if node.type == "action":
            return f"action:{node.config.kind}"
        if node.type == "condition" and node.config.rules:
            first_field = node.config.rules[0].field
            if first_field.startswith("account."):
                return "condition:account_property"
            if first_field.startswith("event."):
                return "condition:event_count"
            return "condition:user_property"
        return None

    def is_capability_available(self, node_key: str) -> bool:
        requirement = CAPABILITY_MAP.get(node_key)
        if requirement is None:
            return True
        return requirement.capability in self.available_capabilities

    def get_missing_requirement(self, node_key: str) -> Optional[CapabilityRequirement]:
        if self.is_capability_available(node_key):
            return None
        return CAPABILITY_MAP[node_key]
