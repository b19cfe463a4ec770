from pydantic import BaseModel, Field, Discriminator, ConfigDict
from typing import Optional, List, Dict, Union, Literal, Annotated

RuleValue = Union[bool, int, float, str]

TriggerKind = Literal[
    "lifecycle_change",
    "event_received",
    "schedule",
    "manual",
    "segment_entry",
    "webhook_received",
    "date_property",
]

ActionKind = Literal[
    "send_email",
    "send_webhook",
    "add_tag",
    "remove_tag",
    "update_user",
    "set_variable",
    "api_call",
    "create_task",
    "send_notification",
]

DelayKind = Literal[
    "fixed_duration",
    "until_event",
    "until_date",
    "until_time_of_day",
    "smart_send_time",
]

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "greater_or_equal",
    "less_or_equal",
    "is_set",
    "is_not_set",
    "in_list",
    "not_in_list",
    "matches_regex",
]

NodeType = Literal["trigger", "action", "condition", "delay", "split", "filter", "goto", "exit"]

# Operators that are evaluated without a comparison value
VALUELESS_OPERATORS = ("is_set", "is_not_set")


class FlowNodePosition(BaseModel):
    x: float = 0
    y: float = 0


class ConditionRule(BaseModel):
    field: str  # e.g. "user.lifecycleState", "event.plan", "var.discount_code"
    operator: ConditionOperator
    value: Optional[RuleValue] = None
    values: Optional[List[RuleValue]] = None  # in_list / not_in_list


# Trigger

class TriggerNodeConfig(BaseModel):
    kind: TriggerKind = "manual"
    lifecycleFrom: List[str] = []
    lifecycleTo: List[str] = []
    eventName: Optional[str] = None  # supports "*" wildcards, e.g. "trial.*"
    eventFilters: List[ConditionRule] = []
    cronExpression: Optional[str] = None
    timezone: Optional[str] = None
    segmentId: Optional[str] = None
    webhookPath: Optional[str] = None
    dateProperty: Optional[str] = None
    dateOffsetDays: int = 0
    allowReEntry: bool = False
    reEntryCooldownMinutes: int = Field(default=0, ge=0)


# Action

class ActionNodeConfig(BaseModel):
    model_config = ConfigDict(extra='allow')  # Channel specific payload fields pass through

    kind: ActionKind = "send_email"
    # send_email
    emailSubject: Optional[str] = None
    emailBody: Optional[str] = None
    emailFromName: Optional[str] = None
    emailReplyTo: Optional[str] = None
    emailTemplateId: Optional[str] = None
    # send_webhook
    webhookUrl: Optional[str] = None
    webhookMethod: Literal["POST", "PUT", "PATCH"] = "POST"
    webhookHeaders: Dict[str, str] = {}
    webhookPayload: Optional[str] = None
    # update_user
    userProperties: Dict[str, RuleValue] = {}
    # add_tag / remove_tag
    tag: Optional[str] = None
    # create_task
    taskTitle: Optional[str] = None
    taskAssignee: Optional[str] = None
    taskPriority: Optional[Literal["low", "medium", "high", "critical"]] = None
    # api_call
    apiUrl: Optional[str] = None
    apiMethod: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    apiHeaders: Dict[str, str] = {}
    apiBodyTemplate: Optional[str] = None
    apiResponseVariable: Optional[str] = None
    # set_variable
    variableKey: Optional[str] = None
    variableValue: Optional[str] = None
    # send_notification
    notificationTitle: Optional[str] = None
    notificationBody: Optional[str] = None
    notificationChannel: Literal["in_app", "push", "sms"] = "in_app"


# Condition / Filter

class ConditionNodeConfig(BaseModel):
    logic: Literal["AND", "OR"] = "AND"
    rules: List[ConditionRule] = []


class FilterNodeConfig(BaseModel):
    logic: Literal["AND", "OR"] = "AND"
    rules: List[ConditionRule] = []


# Delay

class DelayNodeConfig(BaseModel):
    kind: DelayKind = "fixed_duration"
    durationMinutes: Optional[int] = Field(default=None, ge=0)
    waitForEvent: Optional[str] = None
    waitTimeoutMinutes: Optional[int] = Field(default=None, ge=0)
    untilDate: Optional[str] = None  # ISO date, may be a {{variable}} template
    untilTime: Optional[str] = None  # "HH:MM"
    untilTimezone: Optional[str] = None
    sendWindowStart: Optional[str] = None  # "HH:MM"
    sendWindowEnd: Optional[str] = None  # "HH:MM"


# Split

class SplitVariant(BaseModel):
    id: str
    label: str = ""
    percentage: float = Field(ge=0, le=100)


class SplitNodeConfig(BaseModel):
    variants: List[SplitVariant] = []
    winnerMetric: Optional[Literal["open_rate", "click_rate", "conversion_rate"]] = None
    autoPickAfter: int = Field(default=0, ge=0)
    winnerId: Optional[str] = None


# GoTo / Exit

class GoToNodeConfig(BaseModel):
    targetNodeId: str = ""
    maxLoops: int = Field(default=1, ge=1)


class ExitNodeConfig(BaseModel):
    reason: Optional[str] = None


# Base FlowNode with common fields
class BaseFlowNode(BaseModel):
    id: str
    type: NodeType
    label: str = ""
    description: Optional[str] = None
    position: FlowNodePosition = Field(default_factory=FlowNodePosition)


class TriggerNode(BaseFlowNode):
    type: Literal["trigger"]
    config: TriggerNodeConfig = Field(default_factory=TriggerNodeConfig)


class ActionNode(BaseFlowNode):
    type: Literal["action"]
    config: ActionNodeConfig = Field(default_factory=ActionNodeConfig)


class ConditionNode(BaseFlowNode):
    type: Literal["condition"]
    config: ConditionNodeConfig = Field(default_factory=ConditionNodeConfig)


class DelayNode(BaseFlowNode):
    type: Literal["delay"]
    config: DelayNodeConfig = Field(default_factory=DelayNodeConfig)


class SplitNode(BaseFlowNode):
    type: Literal["split"]
    config: SplitNodeConfig = Field(default_factory=SplitNodeConfig)


class FilterNode(BaseFlowNode):
    type: Literal["filter"]
    config: FilterNodeConfig = Field(default_factory=FilterNodeConfig)


class GoToNode(BaseFlowNode):
    type: Literal["goto"]
    config: GoToNodeConfig = Field(default_factory=GoToNodeConfig)


class ExitNode(BaseFlowNode):
    type: Literal["exit"]
    config: ExitNodeConfig = Field(default_factory=ExitNodeConfig)


# Union of all node types with discriminator
FlowNode = Annotated[
    Union[
        TriggerNode,
        ActionNode,
        ConditionNode,
        DelayNode,
        SplitNode,
        FilterNode,
        GoToNode,
        ExitNode
    ],
    Discriminator("type")
]
