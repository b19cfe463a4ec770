from typing import Optional, Dict, Any, List

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_store import FlowStore

# Services
from services.internal.user_service import UserService
from services.condition_service import ConditionService, event_name_matches
from services.enrollment_service import EnrollmentService

# Models
from models.flow_data import FlowData
from models.flow_node_data import TriggerNodeConfig
from models.flow_trigger_data import TriggerSignal
from models.flow_user_context import FlowUserContext
from models.enrollment_data import FlowEnrollmentData

# Signals that describe user state; they can also disqualify running enrollments
STATE_SIGNAL_KINDS = ("lifecycle_change", "segment_entry")


class TriggerIdentificationService:
    """
    Service for identifying triggers and enrolling users into matching flows.
    Every signal (ingested event, lifecycle transition, segment entry,
    inbound webhook, schedule tick, manual enrollment) goes through here.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_store: FlowStore,
        user_service: UserService,
        condition_service: ConditionService,
        enrollment_service: EnrollmentService
    ):
        self.log_util = log_util
        self.flow_store = flow_store
        self.user_service = user_service
        self.condition_service = condition_service
        self.enrollment_service = enrollment_service

    def matches_trigger(
        self,
        config: TriggerNodeConfig,
        signal: TriggerSignal,
        flow_id: Optional[str] = None,
        user: Optional[FlowUserContext] = None
    ) -> bool:
        """
        Check if a signal matches a flow's trigger configuration
        """
        if config.kind != signal.kind:
            return False

        if config.kind == "lifecycle_change":
            from_match = not config.lifecycleFrom or signal.from_state in config.lifecycleFrom
            to_match = not config.lifecycleTo or signal.to_state in config.lifecycleTo
            return from_match and to_match

        elif config.kind == "event_received":
            if not event_name_matches(config.eventName, signal.event_name):
                return False
            if config.eventFilters:
                return self.condition_service.evaluate_condition(
                    "AND",
                    config.eventFilters,
                    user=user,
                    event_properties=signal.event_properties
                )
            return True

        elif config.kind == "segment_entry":
            return not config.segmentId or config.segmentId == signal.segment_id

        elif config.kind == "webhook_received":
            return not config.webhookPath or config.webhookPath == signal.webhook_path

        elif config.kind == "date_property":
            return not config.dateProperty or config.dateProperty == signal.date_property

        elif config.kind in ("schedule", "manual"):
            # Cron evaluation is external; the signal names the flow it fires
            return signal.flow_id is None or signal.flow_id == flow_id

        return False

    async def _sync_profile(self, signal: TriggerSignal, user: FlowUserContext) -> FlowUserContext:
        """
        Reflect a state signal in the profile so entry criteria re-checks see it
        """
        if signal.kind == "lifecycle_change" and signal.to_state and user.lifecycle_state != signal.to_state:
            _, user = await self.user_service.apply_user_update(
                user.user_id, lifecycle_state=signal.to_state, account_id=signal.account_id
            )
        elif signal.kind == "segment_entry" and signal.segment_id and signal.segment_id not in user.segments:
            _, user = await self.user_service.apply_user_update(
                user.user_id, segments=list(user.segments) + [signal.segment_id], account_id=signal.account_id
            )
        return user

    async def _within_limits(self, flow: FlowData) -> bool:
        settings = flow.settings
        if settings.enrollmentCap and flow.metrics.total_enrolled >= settings.enrollmentCap:
            self.log_util.info(
                service_name="TriggerIdentificationService",
                message=f"[TRIGGER_IDENTIFY] Flow {flow.id} reached its enrollment cap of {settings.enrollmentCap}"
            )
            return False
        if settings.maxConcurrentEnrollments:
            active = await self.flow_store.get_flow_enrollments(flow.id, status="active")
            if len(active) >= settings.maxConcurrentEnrollments:
                self.log_util.info(
                    service_name="TriggerIdentificationService",
                    message=f"[TRIGGER_IDENTIFY] Flow {flow.id} is at {settings.maxConcurrentEnrollments} concurrent enrollments"
                )
                return False
        return True

    async def handle_signal(self, signal: TriggerSignal) -> List[FlowEnrollmentData]:
        """
        Enroll the signal's user into every active flow whose trigger matches,
        highest priority first, and advance each new enrollment right away.

        Returns:
            The enrollments created, as they stand after their first pass
        """
        user = await self.user_service.get_user_context(signal.user_id, signal.account_id)
        user = await self._sync_profile(signal, user)

        if signal.kind in STATE_SIGNAL_KINDS:
            await self.enrollment_service.recheck_user_enrollments(signal.user_id)

        flows = await self.flow_store.get_flow_definitions_by_status("active")
        flows.sort(key=lambda flow: flow.settings.priority, reverse=True)

        created: List[FlowEnrollmentData] = []
        for flow in flows:
            trigger = flow.find_trigger_node()
            if trigger is None:
                continue
            if not self.matches_trigger(trigger.config, signal, flow.id, user):
                continue

            allowed, reason = await self.enrollment_service.can_enroll(flow, user.user_id)
            if not allowed:
                self.log_util.debug(
                    service_name="TriggerIdentificationService",
                    message=f"[TRIGGER_IDENTIFY] User {user.user_id} not enrolled in flow {flow.id}: {reason}"
                )
                continue
            if not await self._within_limits(flow):
                continue

            enrollment = await self.enrollment_service.create_enrollment(flow, user, signal.event_properties)
            if enrollment is None:
                continue
            if flow.settings.enrollmentTags:
                user = await self.user_service.add_tags(user.user_id, flow.settings.enrollmentTags)

            self.log_util.info(
                service_name="TriggerIdentificationService",
                message=f"[TRIGGER_IDENTIFY] {signal.kind} enrolled user {user.user_id} in flow {flow.id}"
            )
            advanced = await self.enrollment_service.run_enrollment(enrollment.id)
            created.append(advanced or enrollment)

        return created

    async def handle_user_update(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        lifecycle_state: Optional[str] = None,
        account_id: Optional[str] = None,
        account: Optional[Dict[str, Any]] = None,
        properties: Optional[Dict[str, Any]] = None,
        segments: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Apply a profile update and emit the signals it implies: a lifecycle
        transition and one segment entry per newly joined segment.
        """
        before, after = await self.user_service.apply_user_update(
            user_id,
            email=email,
            name=name,
            lifecycle_state=lifecycle_state,
            account_id=account_id,
            account=account,
            properties=properties,
            segments=segments
        )

        created: List[FlowEnrollmentData] = []
        if after.lifecycle_state != before.lifecycle_state:
            created += await self.handle_signal(TriggerSignal(
                kind="lifecycle_change",
                user_id=user_id,
                account_id=after.account_id,
                from_state=before.lifecycle_state,
                to_state=after.lifecycle_state
            ))

        for segment_id in [segment for segment in after.segments if segment not in before.segments]:
            created += await self.handle_signal(TriggerSignal(
                kind="segment_entry",
                user_id=user_id,
                account_id=after.account_id,
                segment_id=segment_id
            ))

        # Leaving a segment emits no signal but can still disqualify
        exited = 0
        if any(segment not in after.segments for segment in before.segments):
            exited = await self.enrollment_service.recheck_user_enrollments(user_id)

        return {
            "user": after,
            "lifecycle_changed": after.lifecycle_state != before.lifecycle_state,
            "enrollments_created": created,
            "enrollments_exited": exited
        }
