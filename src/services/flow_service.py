from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import ValidationError

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_store import FlowStore

# Services
from services.flow_validation_service import FlowValidationService
from services.enrollment_service import EnrollmentService

# Models
from models.flow_data import FlowData
from models.validation_data import ValidationReport

# Exceptions
from exceptions.flow_exception import (
    FlowException,
    FlowServiceException,
    FlowNotFoundException,
    FlowValidationException,
    FlowGraphException
)

# Allowed status transitions; archived is final
STATUS_TRANSITIONS: Dict[str, tuple] = {
    "draft": ("active", "archived"),
    "active": ("paused", "archived"),
    "paused": ("active", "archived"),
    "archived": (),
}

# Fields an update may replace; engine-owned fields are never taken from callers
EDITABLE_FIELDS = ("name", "description", "nodes", "edges", "variables", "settings")


class FlowService:
    def __init__(
        self,
        log_util: LogUtil,
        flow_store: FlowStore,
        flow_validation_service: FlowValidationService,
        enrollment_service: Optional[EnrollmentService] = None
    ):
        self.log_util = log_util
        self.flow_store = flow_store
        self.flow_validation_service = flow_validation_service
        self.enrollment_service = enrollment_service

    def _build_flow(self, data: Dict[str, Any]) -> FlowData:
        try:
            return FlowData.model_validate(data)
        except ValidationError as e:
            raise FlowGraphException(message=f"Invalid flow: {str(e)}")

    def _ensure_activatable(self, flow: FlowData):
        issues = self.flow_validation_service.validate(flow.nodes, flow.edges, check_integrations=True)
        blocking = self.flow_validation_service.blocking_issues(issues)
        if blocking:
            raise FlowValidationException(
                message=f"Flow cannot be active with {len(blocking)} blocking issue(s)",
                issues=blocking
            )

    async def create_flow(self, flow_data: Dict[str, Any]) -> FlowData:
        """
        Create a new flow. New flows always start as drafts.
        """
        try:
            data = {field: flow_data[field] for field in EDITABLE_FIELDS if field in flow_data}
            data["status"] = "draft"
            flow = self._build_flow(data)
            saved_flow = await self.flow_store.upsert_flow_definition(flow, expected_version=0)

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{saved_flow.name}' created successfully with ID: {saved_flow.id}"
            )
            return saved_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error creating flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error creating flow: {str(e)}")

    async def get_flows_list(self, status: Optional[str] = None) -> List[FlowData]:
        try:
            if status:
                flows = await self.flow_store.get_flow_definitions_by_status(status)
            else:
                flows = await self.flow_store.get_all_flow_definitions()
            flows.sort(key=lambda flow: flow.updated_at or datetime.min, reverse=True)
            return flows

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error getting flows list: {str(e)}"
            )
            raise FlowServiceException(message=f"Error getting flows list: {str(e)}")

    async def get_flow_detail(self, flow_id: str) -> FlowData:
        flow = await self.flow_store.get_flow_definition(flow_id)
        if flow is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        return flow

    async def update_flow(self, flow_id: str, flow_data: Dict[str, Any], expected_version: Optional[int] = None) -> FlowData:
        """
        Replace the editable parts of a flow. Omitted fields keep their
        current value; nodes and edges are replaced wholesale when given.

        expected_version guards against overwriting a concurrent save.
        Active flows must stay free of blocking validation issues.
        """
        try:
            existing_flow = await self.get_flow_detail(flow_id)
            if existing_flow.status == "archived":
                raise FlowServiceException(message="Archived flows cannot be edited", status_code=400)

            data = existing_flow.model_dump()
            for field in EDITABLE_FIELDS:
                if field in flow_data and flow_data[field] is not None:
                    data[field] = flow_data[field]
            flow = self._build_flow(data)

            if flow.status == "active":
                self._ensure_activatable(flow)

            updated_flow = await self.flow_store.upsert_flow_definition(
                flow,
                expected_version=expected_version if expected_version is not None else existing_flow.version
            )
            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{updated_flow.name}' updated successfully with ID: {flow_id} (version {updated_flow.version})"
            )
            return updated_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error updating flow: {str(e)}"
            )
            raise FlowServiceException(message=f"Error updating flow: {str(e)}")

    async def update_flow_status(self, flow_id: str, status: str, expected_version: Optional[int] = None) -> FlowData:
        """
        Update flow status.

        Status transition rules:
        - draft -> active | archived
        - active -> paused | archived
        - paused -> active (resume) | archived
        - archived is final

        Activation is refused while error or integration issues exist;
        warnings never block.
        """
        try:
            if status not in STATUS_TRANSITIONS:
                raise FlowServiceException(
                    message=f"Invalid status: {status}. Valid statuses are: {', '.join(STATUS_TRANSITIONS)}",
                    status_code=400
                )

            existing_flow = await self.get_flow_detail(flow_id)
            current_status = existing_flow.status
            if status == current_status:
                return existing_flow
            if status not in STATUS_TRANSITIONS[current_status]:
                raise FlowServiceException(
                    message=f"Cannot change flow status from '{current_status}' to '{status}'",
                    status_code=400
                )

            now = datetime.utcnow()
            update: Dict[str, Any] = {"status": status}
            if status == "active":
                self._ensure_activatable(existing_flow)
                update["published_at"] = now
            elif status == "archived":
                update["archived_at"] = now

            updated_flow = await self.flow_store.upsert_flow_definition(
                existing_flow.model_copy(update=update),
                expected_version=expected_version if expected_version is not None else existing_flow.version
            )

            if status == "archived" and self.enrollment_service is not None:
                for enrollment in await self.flow_store.get_flow_enrollments(flow_id, status="active"):
                    await self.enrollment_service.exit_enrollment(enrollment.id, "flow archived")

            self.log_util.info(
                service_name="FlowService",
                message=f"Flow '{updated_flow.name}' status changed with ID: {flow_id} (status: {current_status} -> {status})"
            )
            return updated_flow

        except FlowException:
            raise
        except Exception as e:
            self.log_util.error(
                service_name="FlowService",
                message=f"Error updating flow status: {str(e)}"
            )
            raise FlowServiceException(message=f"Error updating flow status: {str(e)}")

    async def delete_flow(self, flow_id: str) -> bool:
        """
        Delete a flow and all of its enrollments
        """
        deleted = await self.flow_store.delete_flow_definition(flow_id)
        if not deleted:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        self.log_util.info(
            service_name="FlowService",
            message=f"Flow {flow_id} deleted"
        )
        return True

    async def duplicate_flow(self, flow_id: str) -> FlowData:
        duplicated = await self.flow_store.duplicate_flow_definition(flow_id)
        if duplicated is None:
            raise FlowNotFoundException(message=f"Flow {flow_id} not found")
        self.log_util.info(
            service_name="FlowService",
            message=f"Flow {flow_id} duplicated as {duplicated.id}"
        )
        return duplicated

    def validate_flow(self, flow_data: Dict[str, Any], check_integrations: bool = True) -> ValidationReport:
        """
        Validate an unsaved graph, e.g. straight from the editor
        """
        flow = self._build_flow({"name": flow_data.get("name") or "untitled", "nodes": flow_data.get("nodes", []), "edges": flow_data.get("edges", [])})
        return self.flow_validation_service.build_report(flow.nodes, flow.edges, check_integrations)

    async def validate_flow_by_id(self, flow_id: str, check_integrations: bool = True) -> ValidationReport:
        flow = await self.get_flow_detail(flow_id)
        return self.flow_validation_service.build_report(flow.nodes, flow.edges, check_integrations)
