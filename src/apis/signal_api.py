from fastapi import APIRouter

# Utils
from utils.log_utils import LogUtil

# Services
from services.trigger_identification_service import TriggerIdentificationService

# Models
from models.flow_trigger_data import TriggerSignal
from models.request.signal_request import UserSignalRequest

# Exceptions
from exceptions.flow_exception import FlowException, FlowServiceException
from apis.http_errors import to_http_exception


def create_signal_api(
    log_util: LogUtil,
    trigger_identification_service: TriggerIdentificationService
) -> APIRouter:
    router = APIRouter(
        prefix="/signals",
        tags=["signals"],
    )

    @router.post("/trigger")
    async def fire_trigger(signal: TriggerSignal):
        """
        Fire a trigger signal for one user: lifecycle_change, segment_entry,
        webhook_received, schedule, manual or date_property. Events go
        through /events so they are deduplicated.
        """
        try:
            if signal.kind == "event_received":
                raise FlowServiceException(
                    message="event_received signals are not accepted here, post the event to /events",
                    status_code=400
                )
            created = await trigger_identification_service.handle_signal(signal)
            return {
                "status": "processed",
                "enrollments_created": len(created),
                "enrollments": created
            }
        except FlowException as e:
            log_util.error(service_name="SignalAPI", message=f"Error processing {signal.kind} signal: {e.message}")
            raise to_http_exception(e)

    @router.post("/user")
    async def update_user(user_request: UserSignalRequest):
        try:
            result = await trigger_identification_service.handle_user_update(
                user_id=user_request.user_id,
                email=user_request.email,
                name=user_request.name,
                lifecycle_state=user_request.lifecycle_state,
                account_id=user_request.account_id,
                account=user_request.account,
                properties=user_request.properties,
                segments=user_request.segments
            )
            return {
                "status": "processed",
                "user": result["user"],
                "lifecycle_changed": result["lifecycle_changed"],
                "enrollments_created": len(result["enrollments_created"]),
                "enrollments_exited": result["enrollments_exited"]
            }
        except FlowException as e:
            log_util.error(service_name="SignalAPI", message=f"Error updating user {user_request.user_id}: {e.message}")
            raise to_http_exception(e)

    return router
