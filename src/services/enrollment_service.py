"""
Enrollment Service
Creates enrollments and advances them through their flow, one node per step.
Every write is a compare-and-set on (status, current_node_id, revision) so
concurrent workers and signals never double-apply a step.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Callable, Tuple

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import quiet_window_end

# Database
from database.flow_store import FlowStore

# Services
from services.internal.user_service import UserService
from services.condition_service import ConditionService, event_name_matches
from services.process_internal_node_service import ProcessInternalNodeService
from services.action_dispatcher_service import ActionDispatcher

# Models
from models.flow_data import FlowData
from models.flow_node_data import FlowNode
from models.flow_user_context import FlowUserContext
from models.enrollment_data import FlowEnrollmentData, EnrollmentHistoryEntry, MAX_HISTORY_ENTRIES
from models.dispatch_data import ActionDispatchContext, DispatchResult
from models.node_outcome import NodeOutcome

# Exceptions
from exceptions.flow_exception import EnrollmentNotFoundException

# Upper bound of nodes one enrollment may traverse in a single pass
MAX_STEPS_PER_PASS = 100

TERMINAL_METRIC = {
    "completed": "completed",
    "exited": "exited",
    "error": "error_count",
}

EXIT_DISQUALIFIED = "no longer matches entry criteria"
EXIT_AUTO_TIMEOUT = "auto-exit timeout"
EXIT_GOAL_REACHED = "goal reached"


class EnrollmentService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_store: FlowStore,
        user_service: UserService,
        condition_service: ConditionService,
        process_internal_node_service: ProcessInternalNodeService,
        action_dispatcher: ActionDispatcher,
        max_attempts: int = 5,
        backoff_base_seconds: int = 30,
        backoff_max_seconds: int = 3600,
        lease_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.log_util = log_util
        self.flow_store = flow_store
        self.user_service = user_service
        self.condition_service = condition_service
        self.process_internal_node_service = process_internal_node_service
        self.action_dispatcher = action_dispatcher
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.lease_seconds = lease_seconds
        self.clock = clock or datetime.utcnow

    # Queries

    async def get_enrollment(self, enrollment_id: str) -> FlowEnrollmentData:
        enrollment = await self.flow_store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundException(message=f"Enrollment {enrollment_id} not found")
        return enrollment

    async def get_user_enrollments(self, user_id: str, flow_id: Optional[str] = None) -> List[FlowEnrollmentData]:
        return await self.flow_store.get_user_enrollments(user_id, flow_id)

    async def get_flow_enrollments(self, flow_id: str, status: Optional[str] = None) -> List[FlowEnrollmentData]:
        return await self.flow_store.get_flow_enrollments(flow_id, status)

    # Entry

    async def can_enroll(self, flow: FlowData, user_id: str, now: Optional[datetime] = None) -> Tuple[bool, str]:
        """
        Re-entry rules of the flow's trigger for one user.

        - an active enrollment always blocks
        - without allowReEntry any prior enrollment blocks
        - with allowReEntry the cooldown runs from the latest terminal time
        """
        now = now or self.clock()
        trigger = flow.find_trigger_node()
        if trigger is None:
            return False, "flow has no trigger"

        prior = await self.flow_store.get_user_enrollments(user_id, flow.id)
        if any(enrollment.status == "active" for enrollment in prior):
            return False, "user already has an active enrollment"
        if not prior:
            return True, ""
        if not trigger.config.allowReEntry:
            return False, "re-entry not allowed"

        latest_exit = max(
            enrollment.completed_at or enrollment.last_processed_at or enrollment.entered_at
            for enrollment in prior
        )
        cooldown = timedelta(minutes=trigger.config.reEntryCooldownMinutes)
        if now - latest_exit < cooldown:
            return False, "re-entry cooldown has not elapsed"
        return True, ""

    async def create_enrollment(
        self,
        flow: FlowData,
        user: FlowUserContext,
        event_properties: Optional[Dict[str, Any]] = None
    ) -> Optional[FlowEnrollmentData]:
        """
        Create an enrollment parked on the trigger node. Returns None when
        the store already holds an active enrollment for the user.
        """
        trigger = flow.find_trigger_node()
        if trigger is None:
            return None

        now = self.clock()
        event_properties = event_properties or {}
        enrollment = FlowEnrollmentData(
            flow_id=flow.id,
            flow_version=flow.version,
            user_id=user.user_id,
            account_id=user.account_id,
            current_node_id=trigger.id,
            entered_at=now,
            next_process_at=now,
            last_processed_at=now,
            variables=self.condition_service.build_initial_variables(flow.variables, user, event_properties),
            event_properties=event_properties,
            history=[EnrollmentHistoryEntry(node_id=trigger.id, node_type="trigger", action="entered", timestamp=now)]
        )

        if not await self.flow_store.insert_enrollment_if_absent(enrollment):
            self.log_util.debug(
                service_name="EnrollmentService",
                message=f"[ENROLL] User {user.user_id} already active in flow {flow.id}, skipping"
            )
            return None

        await self.flow_store.update_flow_metrics(flow.id, {"total_enrolled": 1, "currently_active": 1})
        self.log_util.info(
            service_name="EnrollmentService",
            message=f"[ENROLL] Enrollment {enrollment.id} created for user {user.user_id} in flow {flow.id}"
        )
        return enrollment

    @staticmethod
    def still_eligible(flow: FlowData, user: FlowUserContext) -> bool:
        """
        Re-check the state based entry criteria of a flow's trigger.
        Event-like triggers describe something that happened and never
        disqualify.
        """
        trigger = flow.find_trigger_node()
        if trigger is None:
            return True
        config = trigger.config
        if config.kind == "lifecycle_change" and config.lifecycleTo:
            return user.lifecycle_state in config.lifecycleTo
        if config.kind == "segment_entry" and config.segmentId:
            return config.segmentId in user.segments
        return True

    # Advancement

    async def process_due(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Advance every active enrollment whose next_process_at has passed and
        whose flow is active. Safe to run from several workers at once.
        """
        now = self.clock()
        active_flows = await self.flow_store.get_flow_definitions_by_status("active")
        flows: Dict[str, Optional[FlowData]] = {flow.id: flow for flow in active_flows}
        due = await self.flow_store.get_active_enrollments_due(now, limit, flow_ids=list(flows))
        summary = {"due": len(due), "processed": 0, "skipped": 0, "errors": 0}

        for enrollment in due:
            if enrollment.flow_id not in flows:
                flows[enrollment.flow_id] = await self.flow_store.get_flow_definition(enrollment.flow_id)
            flow = flows[enrollment.flow_id]
            if flow is None or flow.status != "active":
                summary["skipped"] += 1
                continue
            try:
                await self.run_enrollment(enrollment.id)
                summary["processed"] += 1
            except Exception as e:
                summary["errors"] += 1
                self.log_util.error(
                    service_name="EnrollmentService",
                    message=f"[PROCESS_DUE] Error advancing enrollment {enrollment.id}: {str(e)}"
                )

        if due:
            self.log_util.info(
                service_name="EnrollmentService",
                message=f"[PROCESS_DUE] {summary}"
            )
        return summary

    async def run_enrollment(self, enrollment_id: str) -> Optional[FlowEnrollmentData]:
        """
        Step an enrollment forward while it stays due, re-reading it before
        every step. Stops on waits, terminal states, paused flows and lost
        compare-and-set races.
        """
        enrollment = await self.flow_store.get_enrollment(enrollment_id)
        for _ in range(MAX_STEPS_PER_PASS):
            if enrollment is None or enrollment.status != "active":
                return enrollment
            now = self.clock()
            if enrollment.next_process_at is None or enrollment.next_process_at > now:
                return enrollment

            flow = await self.flow_store.get_flow_definition(enrollment.flow_id)
            if flow is None or flow.status != "active":
                return enrollment

            progressed = await self._execute_step(flow, enrollment, now)
            enrollment = await self.flow_store.get_enrollment(enrollment_id)
            if not progressed:
                return enrollment

        self.log_util.warning(
            service_name="EnrollmentService",
            message=f"[RUN] Enrollment {enrollment_id} hit {MAX_STEPS_PER_PASS} steps in one pass, continuing next pass"
        )
        return enrollment

    async def _execute_step(self, flow: FlowData, enrollment: FlowEnrollmentData, now: datetime) -> bool:
        if flow.settings.autoExitDays and now - enrollment.entered_at >= timedelta(days=flow.settings.autoExitDays):
            return await self._apply_outcome(flow, enrollment, None, NodeOutcome(action="exit", reason=EXIT_AUTO_TIMEOUT), now)

        user = await self.user_service.get_user_context(enrollment.user_id, enrollment.account_id)
        if not self.still_eligible(flow, user):
            return await self._apply_outcome(flow, enrollment, None, NodeOutcome(action="exit", reason=EXIT_DISQUALIFIED), now)

        node = flow.find_node(enrollment.current_node_id)
        if node is None:
            outcome = NodeOutcome(action="error", reason=f"Node {enrollment.current_node_id} not found in flow")
            return await self._apply_outcome(flow, enrollment, None, outcome, now)

        if node.type == "trigger":
            return await self._apply_outcome(flow, enrollment, node, NodeOutcome(action="advance"), now)
        elif node.type == "action":
            return await self._execute_action(flow, node, enrollment, user, now)

        outcome = await self.process_internal_node_service.process_internal_node(flow, node, enrollment, user, now)
        return await self._apply_outcome(flow, enrollment, node, outcome, now)

    async def _execute_action(
        self,
        flow: FlowData,
        node: FlowNode,
        enrollment: FlowEnrollmentData,
        user: FlowUserContext,
        now: datetime
    ) -> bool:
        settings = flow.settings
        if settings.respectQuietHours:
            quiet_end = quiet_window_end(now, settings.quietHoursStart, settings.quietHoursEnd, settings.quietHoursTimezone)
            if quiet_end is not None:
                deferred = enrollment.model_copy(update={
                    "next_process_at": quiet_end,
                    "last_processed_at": now,
                    "revision": enrollment.revision + 1,
                    "history": enrollment.with_history(EnrollmentHistoryEntry(
                        node_id=node.id, node_type=node.type, action="waiting", timestamp=now,
                        details=f"Quiet hours, deferred until {quiet_end.isoformat()}"
                    ))
                }, deep=True)
                await self._compare_and_set(enrollment, deferred)
                return False

        # Claim the step: the lease keeps other workers off it while we dispatch
        claimed = enrollment.model_copy(update={
            "revision": enrollment.revision + 1,
            "next_process_at": now + timedelta(seconds=self.lease_seconds),
            "last_processed_at": now
        }, deep=True)
        if not await self._compare_and_set(enrollment, claimed):
            return False

        config = self.condition_service.resolve_config_templates(node.config, claimed.variables, user)
        context = ActionDispatchContext(
            user=user,
            flow_id=flow.id,
            enrollment_id=claimed.id,
            node_id=node.id,
            variables=claimed.variables
        )
        try:
            result = await self.action_dispatcher.dispatch(config, context)
        except Exception as e:
            self.log_util.error(
                service_name="EnrollmentService",
                message=f"[ACTION] Dispatcher raised for enrollment {claimed.id} at node {node.id}: {str(e)}"
            )
            result = DispatchResult(ok=False, error=str(e) or e.__class__.__name__)

        finished_at = self.clock()
        if result.ok:
            outcome = NodeOutcome(action="advance", variables=result.variables, details=f"{config.kind} dispatched")
            return await self._apply_outcome(flow, claimed, node, outcome, finished_at)

        attempts = claimed.attempts + 1
        if attempts >= self.max_attempts:
            outcome = NodeOutcome(action="error", reason=result.error or f"{config.kind} failed")
            return await self._apply_outcome(flow, claimed, node, outcome, finished_at, extra={"attempts": attempts})

        backoff = min(self.backoff_base_seconds * (2 ** (attempts - 1)), self.backoff_max_seconds)
        retry = claimed.model_copy(update={
            "attempts": attempts,
            "last_error": result.error,
            "next_process_at": finished_at + timedelta(seconds=backoff),
            "last_processed_at": finished_at,
            "revision": claimed.revision + 1,
            "history": claimed.with_history(EnrollmentHistoryEntry(
                node_id=node.id, node_type=node.type, action="failed", timestamp=finished_at,
                details=f"Attempt {attempts}/{self.max_attempts} failed: {result.error}; retrying in {backoff}s"
            ))
        }, deep=True)
        self.log_util.warning(
            service_name="EnrollmentService",
            message=f"[ACTION] {config.kind} failed for enrollment {claimed.id} (attempt {attempts}/{self.max_attempts}): {result.error}"
        )
        await self._compare_and_set(claimed, retry)
        return False

    async def _apply_outcome(
        self,
        flow: FlowData,
        enrollment: FlowEnrollmentData,
        node: Optional[FlowNode],
        outcome: NodeOutcome,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Persist the transition an outcome describes. Returns False when the
        enrollment changed underneath us and the write was rejected.
        """
        node_id = node.id if node else enrollment.current_node_id
        node_type = node.type if node else "unknown"
        history = list(enrollment.history)

        def _history(entry_node_id: str, entry_node_type: str, action: str, details: Optional[str] = None):
            history.append(EnrollmentHistoryEntry(
                node_id=entry_node_id, node_type=entry_node_type, action=action, timestamp=now, details=details
            ))

        update: Dict[str, Any] = {
            "last_processed_at": now,
            "revision": enrollment.revision + 1,
        }
        if outcome.variables:
            update["variables"] = {**enrollment.variables, **outcome.variables}
        if outcome.loop_counts is not None:
            update["loop_counts"] = outcome.loop_counts
        if extra:
            update.update(extra)

        moved = {"attempts": 0, "last_error": None, "wait_until": None, "waiting_for_event": None, "next_process_at": now}

        if outcome.action == "advance":
            _history(node_id, node_type, "completed", outcome.details)
            next_node = flow.find_next_node(node_id, outcome.handle)
            if next_node is None:
                update.update({"status": "completed", "completed_at": now, "next_process_at": None,
                               "attempts": 0, "last_error": None, "wait_until": None, "waiting_for_event": None})
            else:
                update.update(moved)
                update["current_node_id"] = next_node.id
                _history(next_node.id, next_node.type, "entered")
        elif outcome.action == "jump":
            target = flow.find_node(outcome.target_node_id)
            _history(node_id, node_type, "completed", outcome.details)
            update.update(moved)
            update["current_node_id"] = target.id
            _history(target.id, target.type, "entered")
        elif outcome.action == "wait":
            update.update({
                "wait_until": outcome.wait_until,
                "waiting_for_event": outcome.waiting_for_event,
                "next_process_at": outcome.wait_until,
            })
            if enrollment.wait_until is None:
                _history(node_id, node_type, "waiting", outcome.details)
        elif outcome.action == "exit":
            _history(node_id, node_type, "completed", outcome.reason)
            update.update({"status": "exited", "exit_reason": outcome.reason, "completed_at": now,
                           "next_process_at": None, "wait_until": None, "waiting_for_event": None})
        else:
            _history(node_id, node_type, "failed", outcome.reason)
            update.update({"status": "error", "last_error": outcome.reason, "error_node_id": node_id,
                           "completed_at": now, "next_process_at": None, "wait_until": None, "waiting_for_event": None})

        update["history"] = history[-MAX_HISTORY_ENTRIES:]
        updated = enrollment.model_copy(update=update, deep=True)
        if not await self._compare_and_set(enrollment, updated):
            return False

        if updated.is_terminal():
            await self._record_terminal(updated)
        return True

    async def _compare_and_set(self, expected: FlowEnrollmentData, updated: FlowEnrollmentData) -> bool:
        applied = await self.flow_store.compare_and_set_enrollment(
            enrollment_id=expected.id,
            expected_status=expected.status,
            expected_current_node_id=expected.current_node_id,
            expected_revision=expected.revision,
            enrollment=updated
        )
        if not applied:
            self.log_util.debug(
                service_name="EnrollmentService",
                message=f"[CAS] Enrollment {expected.id} changed concurrently (revision {expected.revision}), skipping"
            )
        return applied

    async def _record_terminal(self, enrollment: FlowEnrollmentData, extra_metrics: Optional[Dict[str, int]] = None):
        deltas = {"currently_active": -1, TERMINAL_METRIC[enrollment.status]: 1}
        if extra_metrics:
            deltas.update(extra_metrics)
        await self.flow_store.update_flow_metrics(enrollment.flow_id, deltas)
        reason = enrollment.exit_reason or enrollment.last_error
        self.log_util.info(
            service_name="EnrollmentService",
            message=f"[ENROLLMENT] {enrollment.id} for user {enrollment.user_id} in flow {enrollment.flow_id} "
                    f"finished as {enrollment.status}" + (f" ({reason})" if reason else "")
        )

    # Out-of-band transitions

    async def exit_enrollment(self, enrollment_id: str, reason: str, extra_metrics: Optional[Dict[str, int]] = None) -> bool:
        """
        Exit an active enrollment wherever it currently is. Retries while
        other writers keep moving it; returns False once it is terminal.
        """
        for _ in range(MAX_STEPS_PER_PASS):
            enrollment = await self.flow_store.get_enrollment(enrollment_id)
            if enrollment is None or enrollment.is_terminal():
                return False
            now = self.clock()
            updated = enrollment.model_copy(update={
                "status": "exited",
                "exit_reason": reason,
                "completed_at": now,
                "last_processed_at": now,
                "next_process_at": None,
                "wait_until": None,
                "waiting_for_event": None,
                "revision": enrollment.revision + 1,
                "history": enrollment.with_history(EnrollmentHistoryEntry(
                    node_id=enrollment.current_node_id, node_type="unknown", action="completed", timestamp=now, details=reason
                ))
            }, deep=True)
            if await self._compare_and_set(enrollment, updated):
                await self._record_terminal(updated, extra_metrics)
                return True
        return False

    async def resume_waiting_enrollments(self, user_id: str, event_name: str) -> int:
        """
        Wake until_event delays of the user that wait for this event
        """
        resumed = 0
        for enrollment in await self.flow_store.get_user_enrollments(user_id):
            if enrollment.status != "active" or not enrollment.waiting_for_event:
                continue
            if not event_name_matches(enrollment.waiting_for_event, event_name):
                continue
            now = self.clock()
            updated = enrollment.model_copy(update={
                "wait_until": now,
                "next_process_at": now,
                "revision": enrollment.revision + 1,
            }, deep=True)
            if await self._compare_and_set(enrollment, updated):
                resumed += 1
                self.log_util.info(
                    service_name="EnrollmentService",
                    message=f"[RESUME] Enrollment {enrollment.id} received {event_name}, resuming"
                )
                await self.run_enrollment(enrollment.id)
        return resumed

    async def exit_for_goal(self, user_id: str, event_name: str) -> int:
        """
        Exit the user's enrollments in flows whose goal event just happened
        """
        exited = 0
        flows: Dict[str, Optional[FlowData]] = {}
        for enrollment in await self.flow_store.get_user_enrollments(user_id):
            if enrollment.status != "active":
                continue
            if enrollment.flow_id not in flows:
                flows[enrollment.flow_id] = await self.flow_store.get_flow_definition(enrollment.flow_id)
            flow = flows[enrollment.flow_id]
            if flow is None or not flow.settings.goalEvent:
                continue
            if event_name_matches(flow.settings.goalEvent, event_name):
                if await self.exit_enrollment(enrollment.id, EXIT_GOAL_REACHED, {"goal_reached": 1}):
                    exited += 1
        return exited

    async def recheck_user_enrollments(self, user_id: str) -> int:
        """
        Exit the user's active enrollments whose entry criteria no longer hold
        """
        user = await self.user_service.get_user_context(user_id)
        exited = 0
        for enrollment in await self.flow_store.get_user_enrollments(user_id):
            if enrollment.status != "active":
                continue
            flow = await self.flow_store.get_flow_definition(enrollment.flow_id)
            if flow is None or self.still_eligible(flow, user):
                continue
            if await self.exit_enrollment(enrollment.id, EXIT_DISQUALIFIED):
                exited += 1
        return exited
