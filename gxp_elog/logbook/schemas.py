"""
Input schemas for logbook operations.

Every write entering the service is validated here first; pydantic errors
are converted to :class:`gxp_elog.exceptions.ValidationError` at the
service boundary.
"""

from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..access_control import Role
from ..config import get_config
from ..database import naive_utc
from .entities import ActivityType, EquipmentStatus, PMFrequency


class InputSchema(BaseModel):
    """Base for input schemas: unknown fields are rejected."""

    model_config = ConfigDict(
        extra="forbid",
        use_enum_values=True,
        validate_default=True,
        str_strip_whitespace=True,
    )

    def changes(self) -> Dict[str, Any]:
        """Fields supplied by the caller. A None value means unchanged."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


def _require_text(v: Optional[str]) -> Optional[str]:
    if v is not None and not v:
        raise ValueError("must not be empty")
    return v


# Equipment


class EquipmentCreate(InputSchema):
    equipment_id: str = Field(..., max_length=50, description="Business key")
    name: str = Field(..., max_length=200)
    type: str = Field(..., max_length=100)
    location: str = Field(..., max_length=200)
    status: EquipmentStatus = EquipmentStatus.OPERATIONAL
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    qualification_status: Optional[str] = None
    pm_frequency: Optional[PMFrequency] = None
    description: Optional[str] = None

    check_non_empty = field_validator("equipment_id", "name", "type", "location")(
        _require_text
    )


class EquipmentUpdate(InputSchema):
    equipment_id: Optional[str] = Field(None, max_length=50)
    name: Optional[str] = Field(None, max_length=200)
    type: Optional[str] = Field(None, max_length=100)
    location: Optional[str] = Field(None, max_length=200)
    status: Optional[EquipmentStatus] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    qualification_status: Optional[str] = None
    pm_frequency: Optional[PMFrequency] = None
    description: Optional[str] = None

    check_non_empty = field_validator("equipment_id", "name", "type", "location")(
        _require_text
    )


# Users


def _check_password(v: Optional[str]) -> Optional[str]:
    min_length = get_config().password_min_length
    if v is not None and len(v) < min_length:
        raise ValueError(f"must be at least {min_length} characters")
    return v


class UserCreate(InputSchema):
    username: str = Field(..., max_length=100)
    password: str
    full_name: str = Field(..., max_length=200)
    role: Role = Role.OPERATOR
    department: Optional[str] = None
    is_active: bool = True

    check_non_empty = field_validator("username", "full_name")(_require_text)
    check_password = field_validator("password")(_check_password)


class UserUpdate(InputSchema):
    """Partial user update. Passwords are re-hashed by the identity store."""

    full_name: Optional[str] = Field(None, max_length=200)
    role: Optional[Role] = None
    department: Optional[str] = None
    is_active: Optional[bool] = None
    password: Optional[str] = None

    check_non_empty = field_validator("full_name")(_require_text)
    check_password = field_validator("password")(_check_password)


# Log entries


class LogEntryCreate(InputSchema):
    """A new log entry; it always starts in Draft."""

    equipment_id: str = Field(
        ..., description="Equipment id or equipment business key"
    )
    activity_type: ActivityType
    start_time: datetime
    end_time: Optional[datetime] = None
    description: str
    batch_number: Optional[str] = Field(None, max_length=100)
    readings: Optional[Dict[str, float]] = None

    check_non_empty = field_validator("equipment_id", "description")(_require_text)
    to_utc = field_validator("start_time", "end_time")(naive_utc)

    @model_validator(mode="after")
    def validate_time_window(self) -> "LogEntryCreate":
        """End time must not precede start time."""
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not precede start_time")
        return self


class LogEntryUpdate(InputSchema):
    """Draft edit. Status and signature fields are not patchable."""

    equipment_id: Optional[str] = None
    activity_type: Optional[ActivityType] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    description: Optional[str] = None
    batch_number: Optional[str] = Field(None, max_length=100)
    readings: Optional[Dict[str, float]] = None

    check_non_empty = field_validator("equipment_id", "description")(_require_text)
    to_utc = field_validator("start_time", "end_time")(naive_utc)

    @model_validator(mode="after")
    def validate_time_window(self) -> "LogEntryUpdate":
        if (
            self.start_time is not None
            and self.end_time is not None
            and self.end_time < self.start_time
        ):
            raise ValueError("end_time must not precede start_time")
        return self


class SignatureRequest(InputSchema):
    """Credentials and reason entered at the moment of signing."""

    username: str
    password: str = Field(..., min_length=1, repr=False)
    reason: str

    check_non_empty = field_validator("username", "reason")(_require_text)


# Preventive maintenance


class PMScheduleCreate(InputSchema):
    equipment_id: str = Field(
        ..., description="Equipment id or equipment business key"
    )
    task_name: str = Field(..., max_length=200)
    frequency: PMFrequency
    last_completed: Optional[date] = None
    next_due: Optional[date] = Field(
        None, description="Defaults to one period after last_completed, or today"
    )

    check_non_empty = field_validator("equipment_id", "task_name")(_require_text)


class PMScheduleUpdate(InputSchema):
    task_name: Optional[str] = Field(None, max_length=200)
    frequency: Optional[PMFrequency] = None
    last_completed: Optional[date] = None
    next_due: Optional[date] = None

    check_non_empty = field_validator("task_name")(_require_text)
