import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from utils.log_utils import LogUtil
from database.flow_store import InMemoryFlowStore
from services.internal.user_service import UserService
from services.internal.integration_service import IntegrationService
from services.condition_service import ConditionService
from services.flow_validation_service import FlowValidationService
from services.process_internal_node_service import ProcessInternalNodeService
from services.action_dispatcher_service import ActionDispatcher
from services.enrollment_service import EnrollmentService
from services.trigger_identification_service import TriggerIdentificationService
from services.event_ingest_service import EventIngestService
from services.flow_service import FlowService
from models.flow_data import FlowData
from models.flow_node_data import ActionNodeConfig
from models.dispatch_data import ActionDispatchContext, DispatchResult

START = datetime(2026, 3, 2, 12, 0, 0)

ALL_CAPABILITIES = [
    "user_tracking",
    "event_tracking",
    "account_tracking",
    "email_send",
    "push_notification",
    "inbound_webhook",
    "outbound_webhook",
    "outbound_api",
    "task_management",
]


class FakeClock:
    """Mutable naive UTC clock injected into the enrollment engine"""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingDispatcher(ActionDispatcher):
    """
    Dispatcher double: records every call and answers with queued results
    (or raises queued exceptions). Defaults to success.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.results: List[Any] = []
        self.delay_seconds = 0.0

    async def dispatch(self, config: ActionNodeConfig, context: ActionDispatchContext) -> DispatchResult:
        self.calls.append({"kind": config.kind, "node_id": context.node_id, "user_id": context.user.user_id, "config": config})
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return DispatchResult(ok=True)

    def kinds(self) -> List[str]:
        return [call["kind"] for call in self.calls]


@pytest.fixture
def log_util():
    return LogUtil(logger_name="lifecycle_flow_service_tests")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(log_util):
    return InMemoryFlowStore(log_util=log_util, max_events=1000)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def services(log_util, store, clock, dispatcher):
    """Fully wired engine on the in-memory store"""
    user_service = UserService(log_util=log_util, flow_store=store)
    condition_service = ConditionService(log_util=log_util)
    integration_service = IntegrationService(log_util=log_util, available_capabilities=ALL_CAPABILITIES)
    flow_validation_service = FlowValidationService(log_util=log_util, integration_service=integration_service)
    enrollment_service = EnrollmentService(
        log_util=log_util,
        flow_store=store,
        user_service=user_service,
        condition_service=condition_service,
        process_internal_node_service=ProcessInternalNodeService(log_util=log_util, condition_service=condition_service),
        action_dispatcher=dispatcher,
        max_attempts=3,
        backoff_base_seconds=30,
        backoff_max_seconds=3600,
        lease_seconds=300,
        clock=clock
    )
    trigger_identification_service = TriggerIdentificationService(
        log_util=log_util,
        flow_store=store,
        user_service=user_service,
        condition_service=condition_service,
        enrollment_service=enrollment_service
    )
    event_ingest_service = EventIngestService(
        log_util=log_util,
        flow_store=store,
        enrollment_service=enrollment_service,
        trigger_identification_service=trigger_identification_service
    )
    flow_service = FlowService(
        log_util=log_util,
        flow_store=store,
        flow_validation_service=flow_validation_service,
        enrollment_service=enrollment_service
    )
    return {
        "user": user_service,
        "condition": condition_service,
        "integration": integration_service,
        "validation": flow_validation_service,
        "enrollment": enrollment_service,
        "trigger": trigger_identification_service,
        "ingest": event_ingest_service,
        "flow": flow_service,
    }


def build_flow_data(
    nodes: List[Dict[str, Any]],
    edges: List[Dict[str, Any]],
    name: str = "Test flow",
    settings: Optional[Dict[str, Any]] = None,
    variables: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    data: Dict[str, Any] = {"name": name, "nodes": nodes, "edges": edges}
    if settings is not None:
        data["settings"] = settings
    if variables is not None:
        data["variables"] = variables
    return data


def chain_edges(*node_ids: str) -> List[Dict[str, Any]]:
    return [
        {"id": f"e_{source}_{target}", "source": source, "target": target}
        for source, target in zip(node_ids, node_ids[1:])
    ]


def scenario_flow_data() -> Dict[str, Any]:
    """trial_activated -> welcome email -> wait 1 day -> AtRisk? notify : exit"""
    return build_flow_data(
        name="Trial onboarding",
        nodes=[
            {"id": "trigger", "type": "trigger", "config": {"kind": "event_received", "eventName": "trial_activated"}},
            {"id": "welcome", "type": "action", "config": {"kind": "send_email", "emailSubject": "Welcome {{user.name}}"}},
            {"id": "wait", "type": "delay", "config": {"kind": "fixed_duration", "durationMinutes": 1440}},
            {"id": "at_risk", "type": "condition", "config": {
                "logic": "AND",
                "rules": [{"field": "user.lifecycleState", "operator": "equals", "value": "AtRisk"}]
            }},
            {"id": "nudge", "type": "action", "config": {"kind": "send_notification", "notificationTitle": "Need a hand?"}},
            {"id": "done", "type": "exit", "config": {"reason": "healthy"}},
        ],
        edges=chain_edges("trigger", "welcome", "wait", "at_risk") + [
            {"id": "e_yes", "source": "at_risk", "target": "nudge", "sourceHandle": "yes"},
            {"id": "e_no", "source": "at_risk", "target": "done", "sourceHandle": "no"},
        ]
    )


async def create_active_flow(flow_service: FlowService, flow_data: Dict[str, Any]) -> FlowData:
    flow = await flow_service.create_flow(flow_data)
    return await flow_service.update_flow_status(flow.id, "active")
