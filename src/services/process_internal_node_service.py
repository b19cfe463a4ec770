"""
Process Internal Node Service
Handles processing of internal nodes (condition, filter, delay, split, goto, exit)
"""
import hashlib
from datetime import datetime, timedelta
from typing import Optional

from utils.log_utils import LogUtil
from utils.time_utils import parse_hhmm, next_local_time, parse_datetime
from models.flow_data import FlowData
from models.flow_node_data import FlowNode, SplitNodeConfig
from models.flow_user_context import FlowUserContext
from models.enrollment_data import FlowEnrollmentData
from models.node_outcome import NodeOutcome
from services.condition_service import ConditionService
from services.flow_graph_service import variant_handle

# Timeout of an until_event delay without an explicit waitTimeoutMinutes
DEFAULT_EVENT_WAIT_MINUTES = 1440

# Fallback wait for unusable delay configs
FALLBACK_WAIT_MINUTES = 60

# Split buckets are basis points: 0.00 .. 99.99
SPLIT_BUCKETS = 10000


def pick_split_variant(config: SplitNodeConfig, enrollment_id: str) -> Optional[str]:
    """
    Stable variant for an enrollment: a picked winner, otherwise the
    cumulative-percentage range its SHA-256 bucket falls into.
    """
    if not config.variants:
        return None
    if config.winnerId and any(variant.id == config.winnerId for variant in config.variants):
        return config.winnerId

    digest = hashlib.sha256(enrollment_id.encode("utf-8")).hexdigest()
    bucket = (int(digest, 16) % SPLIT_BUCKETS) / (SPLIT_BUCKETS / 100)
    cumulative = 0.0
    for variant in config.variants:
        cumulative += variant.percentage
        if bucket < cumulative:
            return variant.id
    return config.variants[-1].id


class ProcessInternalNodeService:
    """
    Service for processing internal nodes. Evaluation is pure: the outcome
    describes the transition and the enrollment service persists it.
    """

    def __init__(
        self,
        log_util: LogUtil,
        condition_service: ConditionService
    ):
        self.log_util = log_util
        self.condition_service = condition_service

    async def process_internal_node(
        self,
        flow: FlowData,
        node: FlowNode,
        enrollment: FlowEnrollmentData,
        user: FlowUserContext,
        now: datetime
    ) -> NodeOutcome:
        """
        Evaluate one internal node for an enrollment.

        Returns:
            NodeOutcome describing where the enrollment goes next
        """
        self.log_util.debug(
            service_name="ProcessInternalNodeService",
            message=f"[PROCESS_INTERNAL] Processing {node.type} node {node.id} for enrollment {enrollment.id}"
        )

        if node.type == "condition":
            return self._process_condition_node(node, enrollment, user)
        elif node.type == "filter":
            return self._process_filter_node(node, enrollment, user)
        elif node.type == "delay":
            return self._process_delay_node(node, enrollment, user, now)
        elif node.type == "split":
            return self._process_split_node(node, enrollment)
        elif node.type == "goto":
            return self._process_goto_node(flow, node, enrollment)
        elif node.type == "exit":
            return NodeOutcome(action="exit", reason=node.config.reason or "Reached exit node")

        return NodeOutcome(action="error", reason=f"Unknown internal node type: {node.type}")

    def _process_condition_node(self, node: FlowNode, enrollment: FlowEnrollmentData, user: FlowUserContext) -> NodeOutcome:
        result = self.condition_service.evaluate_condition(
            node.config.logic,
            node.config.rules,
            user=user,
            variables=enrollment.variables,
            event_properties=enrollment.event_properties
        )
        handle = "yes" if result else "no"
        return NodeOutcome(action="advance", handle=handle, details=f"Condition evaluated to {handle}")

    def _process_filter_node(self, node: FlowNode, enrollment: FlowEnrollmentData, user: FlowUserContext) -> NodeOutcome:
        matched = self.condition_service.evaluate_condition(
            node.config.logic,
            node.config.rules,
            user=user,
            variables=enrollment.variables,
            event_properties=enrollment.event_properties
        )
        if not matched:
            return NodeOutcome(action="exit", reason="filtered out")
        return NodeOutcome(action="advance", details="Filter passed")

    def _process_delay_node(self, node: FlowNode, enrollment: FlowEnrollmentData, user: FlowUserContext, now: datetime) -> NodeOutcome:
        config = node.config

        # Already parked on this delay
        if enrollment.wait_until is not None:
            if now >= enrollment.wait_until:
                details = "Delay elapsed"
                if enrollment.waiting_for_event:
                    details = f"Stopped waiting for {enrollment.waiting_for_event}"
                return NodeOutcome(action="advance", details=details)
            return NodeOutcome(
                action="wait",
                wait_until=enrollment.wait_until,
                waiting_for_event=enrollment.waiting_for_event
            )

        waiting_for_event = None
        if config.kind == "fixed_duration":
            wait_until = now + timedelta(minutes=config.durationMinutes or 0)
        elif config.kind == "until_event":
            timeout = config.waitTimeoutMinutes if config.waitTimeoutMinutes is not None else DEFAULT_EVENT_WAIT_MINUTES
            wait_until = now + timedelta(minutes=timeout)
            waiting_for_event = config.waitForEvent
        elif config.kind == "until_date":
            resolved = self.condition_service.resolve_template(config.untilDate or "", enrollment.variables, user)
            wait_until = parse_datetime(resolved)
            if wait_until is None:
                self.log_util.warning(
                    service_name="ProcessInternalNodeService",
                    message=f"[PROCESS_INTERNAL] Invalid until date '{resolved}' on node {node.id}, waiting {FALLBACK_WAIT_MINUTES} minutes"
                )
                wait_until = now + timedelta(minutes=FALLBACK_WAIT_MINUTES)
        elif config.kind == "until_time_of_day":
            hour, minute = parse_hhmm(config.untilTime)
            wait_until = next_local_time(now, hour, minute, config.untilTimezone)
        elif config.kind == "smart_send_time":
            start_hour, _ = parse_hhmm(config.sendWindowStart, "09:00")
            end_hour, _ = parse_hhmm(config.sendWindowEnd, "17:00")
            wait_until = next_local_time(now, (start_hour + end_hour) // 2, 0, config.untilTimezone)
        else:
            wait_until = now + timedelta(minutes=FALLBACK_WAIT_MINUTES)

        return NodeOutcome(
            action="wait",
            wait_until=wait_until,
            waiting_for_event=waiting_for_event,
            details=f"Waiting until {wait_until.isoformat()}"
        )

    def _process_split_node(self, node: FlowNode, enrollment: FlowEnrollmentData) -> NodeOutcome:
        variant_id = pick_split_variant(node.config, enrollment.id)
        if variant_id is None:
            return NodeOutcome(action="error", reason="Split has no variants")
        return NodeOutcome(
            action="advance",
            handle=variant_handle(variant_id),
            details=f"Split to variant {variant_id}"
        )

    def _process_goto_node(self, flow: FlowData, node: FlowNode, enrollment: FlowEnrollmentData) -> NodeOutcome:
        target = node.config.targetNodeId
        if flow.find_node(target) is None:
            return NodeOutcome(action="error", reason=f"Go-to target {target or '(none)'} not found")

        loop_counts = dict(enrollment.loop_counts)
        loop_counts[target] = loop_counts.get(target, 0) + 1
        if loop_counts[target] > node.config.maxLoops:
            return NodeOutcome(action="error", reason="loop budget exceeded", loop_counts=loop_counts)

        return NodeOutcome(
            action="jump",
            target_node_id=target,
            loop_counts=loop_counts,
            details=f"Loop {loop_counts[target]}/{node.config.maxLoops} to {target}"
        )
