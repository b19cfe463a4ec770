"""
Event Ingest Service
Deduplicated intake of behavioral events. New events wake waiting
enrollments, end enrollments whose goal they satisfy and fire
event_received triggers.
"""
from typing import List
import traceback

from utils.log_utils import LogUtil
from database.flow_store import FlowStore
from models.event_data import StoredEvent, IngestResult, BatchIngestResult
from models.flow_trigger_data import TriggerSignal
from services.enrollment_service import EnrollmentService
from services.trigger_identification_service import TriggerIdentificationService


class EventIngestService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_store: FlowStore,
        enrollment_service: EnrollmentService,
        trigger_identification_service: TriggerIdentificationService
    ):
        self.log_util = log_util
        self.flow_store = flow_store
        self.enrollment_service = enrollment_service
        self.trigger_identification_service = trigger_identification_service

    async def ingest_event(self, event: StoredEvent) -> IngestResult:
        """
        Store an event unless its messageId was seen. A duplicate is a no-op
        reported as such, never an error.
        """
        if not await self.flow_store.append_event(event):
            self.log_util.debug(
                service_name="EventIngestService",
                message=f"[INGEST] Duplicate message {event.message_id} ignored"
            )
            return IngestResult(status="duplicate", message_id=event.message_id)

        self.log_util.info(
            service_name="EventIngestService",
            message=f"[INGEST] Event {event.event} ({event.message_id}) for user {event.user_id}"
        )
        return await self._react_to_event(event)

    async def ingest_events(self, events: List[StoredEvent]) -> BatchIngestResult:
        """
        Apply the dedup rule per item, including duplicates inside the batch
        """
        stored = await self.flow_store.append_events(events)
        result = BatchIngestResult(ingested=len(stored), duplicates=len(events) - len(stored))
        for event in stored:
            reaction = await self._react_to_event(event)
            result.enrollments_created += reaction.enrollments_created

        self.log_util.info(
            service_name="EventIngestService",
            message=f"[INGEST] Batch of {len(events)}: {result.ingested} ingested, {result.duplicates} duplicates"
        )
        return result

    async def _react_to_event(self, event: StoredEvent) -> IngestResult:
        result = IngestResult(status="ingested", message_id=event.message_id)
        try:
            result.enrollments_resumed = await self.enrollment_service.resume_waiting_enrollments(event.user_id, event.event)
            result.enrollments_exited = await self.enrollment_service.exit_for_goal(event.user_id, event.event)
            created = await self.trigger_identification_service.handle_signal(TriggerSignal(
                kind="event_received",
                user_id=event.user_id,
                account_id=event.account_id,
                event_name=event.event,
                event_properties=event.properties
            ))
            result.enrollments_created = len(created)
        except Exception as e:
            # The event stays stored even when automation processing fails
            self.log_util.error(
                service_name="EventIngestService",
                message=f"[INGEST] Error processing event {event.message_id}: {str(e)}"
            )
            self.log_util.error(
                service_name="EventIngestService",
                message=f"[INGEST] Traceback: {traceback.format_exc()}"
            )
        return result
