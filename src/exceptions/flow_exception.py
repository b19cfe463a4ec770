from typing import List, Optional, Any

class FlowException(Exception):
    """
    This is the base exception for all flow exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

class FlowStoreException(FlowException):
    """
    This is the exception for all flow store (persistence) exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)

class FlowServiceException(FlowException):
    """
    This is the exception for all flow service exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)

class FlowNotFoundException(FlowException):
    """
    This is the exception when flow is not found
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=404)

class FlowValidationException(FlowException):
    """
    This is the exception for flow validation errors.
    Carries the blocking validation issues so callers can render them.
    """
    def __init__(self, message: str, issues: Optional[List[Any]] = None):
        self.issues = issues or []
        super().__init__(message=message, status_code=400)

class FlowVersionConflictException(FlowException):
    """
    Raised when a save is based on a stale flow version
    """
    def __init__(self, message: str, current_version: Optional[int] = None):
        self.current_version = current_version
        super().__init__(message=message, status_code=409)

class FlowGraphException(FlowException):
    """
    Raised when a graph edit would leave the flow structurally unsound
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=400)

class EnrollmentNotFoundException(FlowException):
    """
    This is the exception when an enrollment is not found
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=404)
