from abc import ABC, abstractmethod
from collections import deque, OrderedDict
from typing import Optional, List, Dict, Deque
from datetime import datetime
import threading
import uuid

# Utils
from utils.log_utils import LogUtil

# Exceptions
from exceptions.flow_exception import FlowVersionConflictException

# Models
from models.flow_data import FlowData
from models.flow_settings_data import FlowMetrics
from models.enrollment_data import FlowEnrollmentData
from models.event_data import StoredEvent
from models.flow_user_context import FlowUserContext

DEFAULT_MAX_EVENTS = 50_000


def generate_flow_id() -> str:
    return f"flow_{uuid.uuid4().hex}"


class FlowStore(ABC):
    """
    Persistence surface of the automation engine. Constructed once per
    process and injected into the services; backends are interchangeable.
    """

    # Flow definitions
    @abstractmethod
    async def get_flow_definition(self, flow_id: str) -> Optional[FlowData]: ...

    @abstractmethod
    async def get_all_flow_definitions(self) -> List[FlowData]: ...

    @abstractmethod
    async def get_flow_definitions_by_status(self, status: str) -> List[FlowData]: ...

    @abstractmethod
    async def upsert_flow_definition(self, flow: FlowData, expected_version: Optional[int] = None) -> FlowData:
        """
        Save a flow wholesale, bumping its version and updated_at.
        Raises FlowVersionConflictException when expected_version is stale.
        Engine-owned metrics of an existing flow are preserved.
        """

    @abstractmethod
    async def delete_flow_definition(self, flow_id: str) -> bool:
        """Delete a flow and all of its enrollments."""

    @abstractmethod
    async def duplicate_flow_definition(self, flow_id: str) -> Optional[FlowData]:
        """Copy a flow as a draft with version 1 and fresh metrics."""

    @abstractmethod
    async def update_flow_metrics(self, flow_id: str, deltas: Dict[str, int]) -> None:
        """Apply counter deltas without touching the flow version."""

    # Enrollments
    @abstractmethod
    async def get_enrollment(self, enrollment_id: str) -> Optional[FlowEnrollmentData]: ...

    @abstractmethod
    async def get_flow_enrollments(self, flow_id: str, status: Optional[str] = None) -> List[FlowEnrollmentData]: ...

    @abstractmethod
    async def get_user_enrollments(self, user_id: str, flow_id: Optional[str] = None) -> List[FlowEnrollmentData]: ...

    @abstractmethod
    async def upsert_enrollment(self, enrollment: FlowEnrollmentData) -> FlowEnrollmentData: ...

    @abstractmethod
    async def insert_enrollment_if_absent(self, enrollment: FlowEnrollmentData) -> bool:
        """Insert unless the user already has an active enrollment in the flow."""

    @abstractmethod
    async def compare_and_set_enrollment(
        self,
        enrollment_id: str,
        expected_status: str,
        expected_current_node_id: str,
        expected_revision: int,
        enrollment: FlowEnrollmentData
    ) -> bool:
        """Replace the enrollment only if it still matches the expected state."""

    @abstractmethod
    async def get_active_enrollments_due(
        self,
        now: datetime,
        limit: Optional[int] = None,
        flow_ids: Optional[List[str]] = None
    ) -> List[FlowEnrollmentData]:
        """Due active enrollments, oldest first, restricted to flow_ids when given."""

    # Events
    @abstractmethod
    async def append_event(self, event: StoredEvent) -> bool:
        """Append unless the message id is known. Returns False for duplicates."""

    @abstractmethod
    async def append_events(self, events: List[StoredEvent]) -> List[StoredEvent]:
        """Append each non-duplicate event. Returns the events actually stored."""

    @abstractmethod
    async def has_message_id(self, message_id: str) -> bool: ...

    @abstractmethod
    async def get_events(self, user_id: Optional[str] = None, event_name: Optional[str] = None, limit: Optional[int] = None) -> List[StoredEvent]: ...

    @abstractmethod
    async def count_events(self) -> int: ...

    # User profiles
    @abstractmethod
    async def get_user_profile(self, user_id: str) -> Optional[FlowUserContext]: ...

    @abstractmethod
    async def upsert_user_profile(self, profile: FlowUserContext) -> FlowUserContext: ...

    def close(self):
        pass


class InMemoryFlowStore(FlowStore):
    """
    Process-local store. Values are copied on the way in and out so callers
    never share mutable state with the store.
    """

    def __init__(self, log_util: LogUtil, max_events: int = DEFAULT_MAX_EVENTS):
        self.log_util = log_util
        self.max_events = max_events

        self._flows: Dict[str, FlowData] = {}
        self._enrollments: Dict[str, FlowEnrollmentData] = {}
        self._profiles: Dict[str, FlowUserContext] = {}

        # Bounded event log plus its dedup index (message_id -> event)
        self._events: Deque[StoredEvent] = deque()
        self._message_ids: "OrderedDict[str, bool]" = OrderedDict()

        # Single mutation points
        self._lock = threading.Lock()
        self._event_lock = threading.Lock()

    # Flow definitions

    async def get_flow_definition(self, flow_id: str) -> Optional[FlowData]:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_all_flow_definitions(self) -> List[FlowData]:
        return [flow.model_copy(deep=True) for flow in list(self._flows.values())]

    async def get_flow_definitions_by_status(self, status: str) -> List[FlowData]:
        return [flow.model_copy(deep=True) for flow in list(self._flows.values()) if flow.status == status]

    async def upsert_flow_definition(self, flow: FlowData, expected_version: Optional[int] = None) -> FlowData:
        with self._lock:
            flow_id = flow.id or generate_flow_id()
            existing = self._flows.get(flow_id)
            current_version = existing.version if existing else 0
            if expected_version is not None and expected_version != current_version:
                raise FlowVersionConflictException(
                    message=f"Flow {flow_id} is at version {current_version}, save was based on version {expected_version}",
                    current_version=current_version
                )

            update = {
                "id": flow_id,
                "version": current_version + 1,
                "updated_at": datetime.utcnow(),
            }
            if existing:
                update["metrics"] = existing.metrics.model_copy()
                update["created_at"] = existing.created_at
            saved = flow.model_copy(update=update, deep=True)
            self._flows[flow_id] = saved
            return saved.model_copy(deep=True)

    async def delete_flow_definition(self, flow_id: str) -> bool:
        with self._lock:
            for enrollment_id in [e.id for e in self._enrollments.values() if e.flow_id == flow_id]:
                del self._enrollments[enrollment_id]
            return self._flows.pop(flow_id, None) is not None

    async def duplicate_flow_definition(self, flow_id: str) -> Optional[FlowData]:
        with self._lock:
            original = self._flows.get(flow_id)
            if original is None:
                return None
            now = datetime.utcnow()
            copy = original.model_copy(
                update={
                    "id": generate_flow_id(),
                    "name": f"{original.name} (Copy)",
                    "status": "draft",
                    "version": 1,
                    "metrics": FlowMetrics(),
                    "created_at": now,
                    "updated_at": now,
                    "published_at": None,
                    "archived_at": None,
                },
                deep=True
            )
            self._flows[copy.id] = copy
            return copy.model_copy(deep=True)

    async def update_flow_metrics(self, flow_id: str, deltas: Dict[str, int]) -> None:
        with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None:
                return
            metrics = flow.metrics.model_dump()
            for key, delta in deltas.items():
                metrics[key] = max(0, metrics.get(key, 0) + delta)
            self._flows[flow_id] = flow.model_copy(update={"metrics": FlowMetrics(**metrics)})

    # Enrollments

    async def get_enrollment(self, enrollment_id: str) -> Optional[FlowEnrollmentData]:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def get_flow_enrollments(self, flow_id: str, status: Optional[str] = None) -> List[FlowEnrollmentData]:
        return [
            e.model_copy(deep=True) for e in list(self._enrollments.values())
            if e.flow_id == flow_id and (status is None or e.status == status)
        ]

    async def get_user_enrollments(self, user_id: str, flow_id: Optional[str] = None) -> List[FlowEnrollmentData]:
        return [
            e.model_copy(deep=True) for e in list(self._enrollments.values())
            if e.user_id == user_id and (flow_id is None or e.flow_id == flow_id)
        ]

    async def upsert_enrollment(self, enrollment: FlowEnrollmentData) -> FlowEnrollmentData:
        with self._lock:
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return enrollment

    async def insert_enrollment_if_absent(self, enrollment: FlowEnrollmentData) -> bool:
        with self._lock:
            for existing in self._enrollments.values():
                if existing.flow_id == enrollment.flow_id and existing.user_id == enrollment.user_id and existing.status == "active":
                    return False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return True

    async def compare_and_set_enrollment(
        self,
        enrollment_id: str,
        expected_status: str,
        expected_current_node_id: str,
        expected_revision: int,
        enrollment: FlowEnrollmentData
    ) -> bool:
        with self._lock:
            current = self._enrollments.get(enrollment_id)
            if current is None:
                return False
            if (current.status != expected_status
                    or current.current_node_id != expected_current_node_id
                    or current.revision != expected_revision):
                return False
            self._enrollments[enrollment_id] = enrollment.model_copy(deep=True)
            return True

    async def get_active_enrollments_due(
        self,
        now: datetime,
        limit: Optional[int] = None,
        flow_ids: Optional[List[str]] = None
    ) -> List[FlowEnrollmentData]:
        allowed = set(flow_ids) if flow_ids is not None else None
        due = [
            e for e in list(self._enrollments.values())
            if e.status == "active" and e.next_process_at is not None and e.next_process_at <= now
            and (allowed is None or e.flow_id in allowed)
        ]
        due.sort(key=lambda e: e.next_process_at)
        if limit is not None:
            due = due[:limit]
        return [e.model_copy(deep=True) for e in due]

    # Events

    def _append_locked(self, event: StoredEvent) -> bool:
        if event.message_id in self._message_ids:
            return False
        self._message_ids[event.message_id] = True
        self._events.append(event.model_copy(deep=True))
        return True

    def _evict_locked(self):
        # Sliding window: evicted message ids leave the dedup index too
        evicted = 0
        while len(self._events) > self.max_events:
            oldest = self._events.popleft()
            self._message_ids.pop(oldest.message_id, None)
            evicted += 1
        if evicted:
            self.log_util.debug(
                service_name="InMemoryFlowStore",
                message=f"Evicted {evicted} oldest event(s); their message ids may be ingested again"
            )

    async def append_event(self, event: StoredEvent) -> bool:
        with self._event_lock:
            stored = self._append_locked(event)
            if stored:
                self._evict_locked()
            return stored

    async def append_events(self, events: List[StoredEvent]) -> List[StoredEvent]:
        stored: List[StoredEvent] = []
        with self._event_lock:
            for event in events:
                if self._append_locked(event):
                    stored.append(event)
            self._evict_locked()
        return stored

    async def has_message_id(self, message_id: str) -> bool:
        return message_id in self._message_ids

    async def get_events(self, user_id: Optional[str] = None, event_name: Optional[str] = None, limit: Optional[int] = None) -> List[StoredEvent]:
        results = [
            e for e in list(self._events)
            if (user_id is None or e.user_id == user_id) and (event_name is None or e.event == event_name)
        ]
        if limit is not None:
            results = results[-limit:]
        return [e.model_copy(deep=True) for e in results]

    async def count_events(self) -> int:
        return len(self._events)

    # User profiles

    async def get_user_profile(self, user_id: str) -> Optional[FlowUserContext]:
        profile = self._profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    async def upsert_user_profile(self, profile: FlowUserContext) -> FlowUserContext:
        with self._lock:
            self._profiles[profile.user_id] = profile.model_copy(deep=True)
        return profile
