from fastapi import APIRouter

# Utils
from utils.log_utils import LogUtil

# Services
from services.event_ingest_service import EventIngestService

# Models
from models.event_data import StoredEvent, IngestResult, BatchIngestResult
from models.request.event_request import EventBatchRequest

# Exceptions
from exceptions.flow_exception import FlowException
from apis.http_errors import to_http_exception


def create_event_api(
    log_util: LogUtil,
    event_ingest_service: EventIngestService
) -> APIRouter:
    router = APIRouter(
        prefix="/events",
        tags=["events"],
    )

    @router.post("", response_model=IngestResult)
    async def ingest_event(event: StoredEvent):
        """
        Ingest one event. Idempotent on messageId: a replay returns
        status "duplicate" and changes nothing.
        """
        try:
            return await event_ingest_service.ingest_event(event)
        except FlowException as e:
            log_util.error(service_name="EventAPI", message=f"Error ingesting event {event.message_id}: {e.message}")
            raise to_http_exception(e)

    @router.post("/batch", response_model=BatchIngestResult)
    async def ingest_events(batch_request: EventBatchRequest):
        try:
            return await event_ingest_service.ingest_events(batch_request.batch)
        except FlowException as e:
            log_util.error(service_name="EventAPI", message=f"Error ingesting event batch: {e.message}")
            raise to_http_exception(e)

    return router
