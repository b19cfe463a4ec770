from typing import Optional
from fastapi import APIRouter

# Utils
from utils.log_utils import LogUtil

# Services
from services.flow_service import FlowService
from services.enrollment_service import EnrollmentService

# Models
from models.request.flow_request import FlowCreateRequest, FlowUpdateRequest, FlowStatusRequest, FlowValidateRequest

# Exceptions
from exceptions.flow_exception import FlowException
from apis.http_errors import to_http_exception


def create_flow_api(
    log_util: LogUtil,
    flow_service: FlowService,
    enrollment_service: EnrollmentService
) -> APIRouter:
    router = APIRouter(
        prefix="/flow",
        tags=["flow"],
    )

    @router.post("/create")
    async def create_flow(flow_request: FlowCreateRequest):
        try:
            return await flow_service.create_flow(flow_data=flow_request.model_dump())
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error creating flow: {e.message}")
            raise to_http_exception(e)

    @router.get("/list")
    async def get_flows_list(status: Optional[str] = None):
        try:
            return await flow_service.get_flows_list(status=status)
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error getting flows list: {e.message}")
            raise to_http_exception(e)

    @router.get("/detail/{flow_id}")
    async def get_flow_detail(flow_id: str):
        try:
            return await flow_service.get_flow_detail(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error getting flow detail: {e.message}")
            raise to_http_exception(e)

    @router.put("/update/{flow_id}")
    async def update_flow(flow_id: str, flow_request: FlowUpdateRequest):
        try:
            return await flow_service.update_flow(
                flow_id=flow_id,
                flow_data=flow_request.model_dump(exclude={"expected_version"}, exclude_none=True),
                expected_version=flow_request.expected_version
            )
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error updating flow: {e.message}")
            raise to_http_exception(e)

    @router.post("/status/{flow_id}")
    async def update_flow_status(flow_id: str, status_request: FlowStatusRequest):
        """
        Update flow status.

        Request body:
        {
            "status": "active" | "paused" | "archived",
            "expected_version": 3
        }
        """
        try:
            return await flow_service.update_flow_status(
                flow_id=flow_id,
                status=status_request.status,
                expected_version=status_request.expected_version
            )
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error updating flow status: {e.message}")
            raise to_http_exception(e)

    @router.delete("/delete/{flow_id}")
    async def delete_flow(flow_id: str):
        try:
            await flow_service.delete_flow(flow_id=flow_id)
            return {"status": "deleted", "flow_id": flow_id}
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error deleting flow: {e.message}")
            raise to_http_exception(e)

    @router.post("/duplicate/{flow_id}")
    async def duplicate_flow(flow_id: str):
        try:
            return await flow_service.duplicate_flow(flow_id=flow_id)
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error duplicating flow: {e.message}")
            raise to_http_exception(e)

    @router.post("/validate")
    async def validate_flow(validate_request: FlowValidateRequest):
        try:
            return flow_service.validate_flow(
                flow_data=validate_request.model_dump(),
                check_integrations=validate_request.check_integrations
            )
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error validating flow: {e.message}")
            raise to_http_exception(e)

    @router.get("/validate/{flow_id}")
    async def validate_saved_flow(flow_id: str, check_integrations: bool = True):
        try:
            return await flow_service.validate_flow_by_id(flow_id=flow_id, check_integrations=check_integrations)
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error validating flow: {e.message}")
            raise to_http_exception(e)

    @router.get("/{flow_id}/enrollments")
    async def get_flow_enrollments(flow_id: str, status: Optional[str] = None):
        try:
            await flow_service.get_flow_detail(flow_id=flow_id)
            return await enrollment_service.get_flow_enrollments(flow_id=flow_id, status=status)
        except FlowException as e:
            log_util.error(service_name="FlowService", message=f"Error getting flow enrollments: {e.message}")
            raise to_http_exception(e)

    return router
