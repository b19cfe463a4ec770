from typing import Optional
from fastapi import APIRouter

# Utils
from utils.log_utils import LogUtil

# Services
from services.enrollment_service import EnrollmentService
from services.enrollment_scheduler_service import EnrollmentSchedulerService

# Exceptions
from exceptions.flow_exception import FlowException
from apis.http_errors import to_http_exception


def create_enrollment_api(
    log_util: LogUtil,
    enrollment_service: EnrollmentService,
    enrollment_scheduler_service: EnrollmentSchedulerService
) -> APIRouter:
    router = APIRouter(
        prefix="/enrollments",
        tags=["enrollments"],
    )

    @router.post("/process-due")
    async def process_due():
        """
        Run one scheduling pass now, e.g. from an external cron
        """
        try:
            return await enrollment_scheduler_service.run_once()
        except FlowException as e:
            log_util.error(service_name="EnrollmentAPI", message=f"Error processing due enrollments: {e.message}")
            raise to_http_exception(e)

    @router.get("/user/{user_id}")
    async def get_user_enrollments(user_id: str, flow_id: Optional[str] = None):
        try:
            return await enrollment_service.get_user_enrollments(user_id=user_id, flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="EnrollmentAPI", message=f"Error getting enrollments of user {user_id}: {e.message}")
            raise to_http_exception(e)

    @router.get("/{enrollment_id}")
    async def get_enrollment(enrollment_id: str):
        try:
            return await enrollment_service.get_enrollment(enrollment_id=enrollment_id)
        except FlowException as e:
            log_util.error(service_name="EnrollmentAPI", message=f"Error getting enrollment {enrollment_id}: {e.message}")
            raise to_http_exception(e)

    return router
