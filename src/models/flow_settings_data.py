from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Union


class FlowSettings(BaseModel):
    """
    Per-flow enrollment and delivery settings
    """
    enrollmentCap: int = Field(default=0, ge=0, description="Total enrollments allowed (0 = unlimited)")
    maxConcurrentEnrollments: int = Field(default=0, ge=0, description="Active enrollments allowed at once (0 = unlimited)")
    autoExitDays: int = Field(default=0, ge=0, description="Exit enrollments older than N days (0 = never)")
    respectQuietHours: bool = False
    quietHoursStart: Optional[str] = None  # "HH:MM"
    quietHoursEnd: Optional[str] = None  # "HH:MM"
    quietHoursTimezone: Optional[str] = None
    goalEvent: Optional[str] = Field(default=None, description="Event name that ends an enrollment as goal reached")
    enrollmentTags: List[str] = []
    priority: int = Field(default=0, description="Higher priority flows are matched first")


class FlowMetrics(BaseModel):
    """
    Aggregate counters maintained by the enrollment engine
    """
    total_enrolled: int = 0
    currently_active: int = 0
    completed: int = 0
    exited: int = 0
    goal_reached: int = 0
    error_count: int = 0


class FlowVariable(BaseModel):
    """
    Flow scoped variable resolved into each enrollment at entry
    """
    key: str
    label: str = ""
    type: Literal["string", "number", "boolean", "date"] = "string"
    defaultValue: Optional[Union[bool, int, float, str]] = None
    source: Literal["static", "user_property", "account_property", "event_property"] = "static"
    sourceField: Optional[str] = None
