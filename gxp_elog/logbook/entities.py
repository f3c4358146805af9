"""
SQLAlchemy models for the logbook entities.

Users, equipment, log entries and preventive maintenance schedules. The
audit trail table lives in ``gxp_elog.audit_trail.storage``.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base, utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class EquipmentStatus(str, Enum):
    """Operational status of a piece of equipment."""

    OPERATIONAL = "Operational"
    IN_USE = "In Use"
    MAINTENANCE = "Maintenance"
    OFFLINE = "Offline"


class ActivityType(str, Enum):
    """Kinds of activity recorded in the logbook."""

    OPERATION = "Operation"
    CLEANING = "Cleaning"
    MAINTENANCE = "Maintenance"
    CALIBRATION = "Calibration"
    SAMPLING = "Sampling"


class LogEntryStatus(str, Enum):
    """Lifecycle states of a log entry. Draft -> Submitted -> Approved."""

    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"


class PMFrequency(str, Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    SEMI_ANNUALLY = "Semi-Annually"
    ANNUALLY = "Annually"


class PMStatus(str, Enum):
    """Persisted PM schedule status. Display status is derived at read time."""

    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"


class UserDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for users."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<User {self.username} ({self.role})>"


class EquipmentDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for equipment."""

    __tablename__ = "equipment"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    equipment_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    location: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=EquipmentStatus.OPERATIONAL.value, nullable=False
    )
    manufacturer: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    qualification_status: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )
    pm_frequency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Equipment {self.equipment_id} ({self.status})>"


class LogEntryDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for log entries.

    ``version`` is bumped by every write so that transitions can be applied
    as a single conditional UPDATE.
    """

    __tablename__ = "log_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    log_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    equipment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("equipment.id"), nullable=False, index=True
    )
    activity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    batch_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    readings: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=LogEntryStatus.DRAFT.value, nullable=False, index=True
    )
    created_by: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=True
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (Index("idx_log_entries_created_at", "created_at"),)

    def __repr__(self) -> str:
        return f"<LogEntry {self.log_id} ({self.status})>"


class PMScheduleDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for preventive maintenance schedules."""

    __tablename__ = "pm_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    equipment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("equipment.id"), nullable=False, index=True
    )
    task_name: Mapped[str] = mapped_column(String(200), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    last_completed: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    next_due: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=PMStatus.SCHEDULED.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<PMSchedule {self.task_name} due {self.next_due}>"
