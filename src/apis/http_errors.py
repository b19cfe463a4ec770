from fastapi.exceptions import HTTPException

# Exceptions
from exceptions.flow_exception import FlowException, FlowValidationException, FlowVersionConflictException


def to_http_exception(e: FlowException) -> HTTPException:
    """
    Translate a service exception into the HTTPException the routers raise
    """
    if isinstance(e, FlowValidationException):
        return HTTPException(
            status_code=e.status_code,
            detail={"message": e.message, "issues": [issue.model_dump() for issue in e.issues]}
        )
    if isinstance(e, FlowVersionConflictException):
        return HTTPException(
            status_code=e.status_code,
            detail={"message": e.message, "current_version": e.current_version}
        )
    return HTTPException(status_code=e.status_code, detail=e.message)
