import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_store import FlowStore, InMemoryFlowStore
from database.flow_db import FlowDB

# Internal Services
from services.internal.user_service import UserService
from services.internal.integration_service import IntegrationService

# Services
from services.condition_service import ConditionService
from services.flow_validation_service import FlowValidationService
from services.process_internal_node_service import ProcessInternalNodeService
from services.action_dispatcher_service import DefaultActionDispatcher
from services.enrollment_service import EnrollmentService
from services.trigger_identification_service import TriggerIdentificationService
from services.event_ingest_service import EventIngestService
from services.flow_service import FlowService
from services.enrollment_scheduler_service import EnrollmentSchedulerService

# APIs
from apis.flow_api import create_flow_api
from apis.event_api import create_event_api
from apis.signal_api import create_signal_api
from apis.enrollment_api import create_enrollment_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)


def create_flow_store() -> FlowStore:
    backend = str(environment_utils.get_env_variable("STORE_BACKEND")).lower()
    if backend == "mongo":
        log_util.info(service_name="FlowService", message="Using MongoDB flow store")
        return FlowDB(log_util=log_util, environment_utils=environment_utils)
    if backend != "memory":
        log_util.warning(service_name="FlowService", message=f"Unknown STORE_BACKEND '{backend}', falling back to memory")
    log_util.info(service_name="FlowService", message="Using in-memory flow store")
    return InMemoryFlowStore(log_util=log_util, max_events=environment_utils.get_env_variable("MAX_EVENTS"))


# Database
flow_store = create_flow_store()

# Internal Services
user_service = UserService(log_util=log_util, flow_store=flow_store)
integration_service = IntegrationService(
    log_util=log_util,
    available_capabilities=environment_utils.get_list_variable("AVAILABLE_CAPABILITIES")
)

# Services
condition_service = ConditionService(log_util=log_util)

flow_validation_service = FlowValidationService(
    log_util=log_util,
    integration_service=integration_service
)

process_internal_node_service = ProcessInternalNodeService(
    log_util=log_util,
    condition_service=condition_service
)

action_dispatcher = DefaultActionDispatcher(
    log_util=log_util,
    user_service=user_service,
    email_service_url=environment_utils.get_env_variable("EMAIL_SERVICE_URL"),
    notification_service_url=environment_utils.get_env_variable("NOTIFICATION_SERVICE_URL"),
    task_service_url=environment_utils.get_env_variable("TASK_SERVICE_URL"),
    timeout=environment_utils.get_env_variable("HTTP_TIMEOUT_SECONDS")
)

enrollment_service = EnrollmentService(
    log_util=log_util,
    flow_store=flow_store,
    user_service=user_service,
    condition_service=condition_service,
    process_internal_node_service=process_internal_node_service,
    action_dispatcher=action_dispatcher,
    max_attempts=environment_utils.get_env_variable("DISPATCH_MAX_ATTEMPTS"),
    backoff_base_seconds=environment_utils.get_env_variable("DISPATCH_BACKOFF_BASE_SECONDS"),
    backoff_max_seconds=environment_utils.get_env_variable("DISPATCH_BACKOFF_MAX_SECONDS"),
    lease_seconds=environment_utils.get_env_variable("ENROLLMENT_LEASE_SECONDS")
)

trigger_identification_service = TriggerIdentificationService(
    log_util=log_util,
    flow_store=flow_store,
    user_service=user_service,
    condition_service=condition_service,
    enrollment_service=enrollment_service
)

event_ingest_service = EventIngestService(
    log_util=log_util,
    flow_store=flow_store,
    enrollment_service=enrollment_service,
    trigger_identification_service=trigger_identification_service
)

flow_service = FlowService(
    log_util=log_util,
    flow_store=flow_store,
    flow_validation_service=flow_validation_service,
    enrollment_service=enrollment_service
)

# Enrollment scheduler: advances due enrollments (delays, retries, leases)
enrollment_scheduler_service = EnrollmentSchedulerService(
    log_util=log_util,
    enrollment_service=enrollment_service,
    check_interval_seconds=environment_utils.get_env_variable("SCHEDULER_INTERVAL_SECONDS"),
    workers=environment_utils.get_env_variable("SCHEDULER_WORKERS"),
    batch_size=environment_utils.get_env_variable("SCHEDULER_BATCH_SIZE")
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_util.info(service_name="FlowService", message="Application startup complete")

    await enrollment_scheduler_service.start()
    log_util.info(service_name="FlowService", message="Enrollment scheduler started")

    yield

    # Shutdown
    await enrollment_scheduler_service.stop()
    log_util.info(service_name="FlowService", message="Enrollment scheduler stopped")

    flow_store.close()
    log_util.info(service_name="FlowService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="lifecycle flow service",
    description="Lifecycle marketing flow automation: triggers, enrollments and scheduled actions",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Flow management APIs
flow_api_router = create_flow_api(
    log_util=log_util,
    flow_service=flow_service,
    enrollment_service=enrollment_service
)
app.include_router(flow_api_router)

# Event intake API
event_api_router = create_event_api(
    log_util=log_util,
    event_ingest_service=event_ingest_service
)
app.include_router(event_api_router)

# Trigger signal and user profile API
signal_api_router = create_signal_api(
    log_util=log_util,
    trigger_identification_service=trigger_identification_service
)
app.include_router(signal_api_router)

# Enrollment API
enrollment_api_router = create_enrollment_api(
    log_util=log_util,
    enrollment_service=enrollment_service,
    enrollment_scheduler_service=enrollment_scheduler_service
)
app.include_router(enrollment_api_router)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "lifecycle_flow_service",
        "scheduler_running": enrollment_scheduler_service.running
    }

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="FlowService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="FlowService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
