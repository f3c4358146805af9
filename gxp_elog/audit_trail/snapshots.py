"""
Typed snapshots of audited entities.

Every audit record stores the state of the affected entity before and after
the change. Snapshots form a closed, versioned union discriminated by
``snapshot_type`` and are serialized as canonical JSON (sorted keys, compact
separators) so that two records can be diffed textually and parsed back
field-for-field.
"""

import json
from datetime import date, datetime
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

SCHEMA_VERSION = 1


class SnapshotBase(BaseModel):
    """Common configuration for all snapshots."""

    model_config = ConfigDict(frozen=True, from_attributes=True, extra="forbid")

    schema_version: int = SCHEMA_VERSION

    @classmethod
    def from_entity(cls, entity: Any) -> "SnapshotBase":
        """Build a snapshot from an ORM entity (or any object with the fields)."""
        return cls.model_validate(entity)

    def to_json(self) -> str:
        return serialize_snapshot(self)


class UserSnapshot(SnapshotBase):
    """User state. Password material is never part of a snapshot."""

    snapshot_type: Literal["User"] = "User"

    id: str
    username: str
    full_name: str
    role: str
    department: Optional[str] = None
    is_active: bool
    created_at: datetime


class EquipmentSnapshot(SnapshotBase):
    snapshot_type: Literal["Equipment"] = "Equipment"

    id: str
    equipment_id: str
    name: str
    type: str
    location: str
    status: str
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    qualification_status: Optional[str] = None
    pm_frequency: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class LogEntrySnapshot(SnapshotBase):
    """Log entry state, including lifecycle and signature fields."""

    snapshot_type: Literal["LogEntry"] = "LogEntry"

    id: str
    log_id: str
    equipment_id: str
    activity_type: str
    start_time: datetime
    end_time: Optional[datetime] = None
    description: str
    batch_number: Optional[str] = None
    readings: Optional[Dict[str, float]] = None
    status: str
    created_by: str
    created_at: datetime
    submitted_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    version: int


class PMScheduleSnapshot(SnapshotBase):
    snapshot_type: Literal["PMSchedule"] = "PMSchedule"

    id: str
    equipment_id: str
    task_name: str
    frequency: str
    last_completed: Optional[date] = None
    next_due: date
    status: str
    created_at: datetime


Snapshot = Annotated[
    Union[UserSnapshot, EquipmentSnapshot, LogEntrySnapshot, PMScheduleSnapshot],
    Field(discriminator="snapshot_type"),
]

_snapshot_adapter: TypeAdapter = TypeAdapter(Snapshot)

# ORM class name -> snapshot model
_SNAPSHOT_TYPES = {
    "UserDB": UserSnapshot,
    "EquipmentDB": EquipmentSnapshot,
    "LogEntryDB": LogEntrySnapshot,
    "PMScheduleDB": PMScheduleSnapshot,
}


def serialize_snapshot(snapshot: SnapshotBase) -> str:
    """
    Serialize a snapshot to canonical JSON.

    Args:
        snapshot: Snapshot to serialize

    Returns:
        JSON text with sorted keys and no insignificant whitespace
    """
    data: Dict[str, Any] = snapshot.model_dump(mode="json")
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def parse_snapshot(text: str) -> Snapshot:
    """
    Parse canonical JSON back into its typed snapshot.

    Raises:
        pydantic.ValidationError: If the text is not a known snapshot
    """
    return _snapshot_adapter.validate_json(text)


def snapshot_of(entity: Any) -> SnapshotBase:
    """
    Snapshot an ORM entity, choosing the model from the entity's class.

    Raises:
        TypeError: If the entity type is not audited
    """
    snapshot_cls = _SNAPSHOT_TYPES.get(type(entity).__name__)
    if snapshot_cls is None:
        raise TypeError(f"No snapshot schema for {type(entity).__name__}")
    return snapshot_cls.from_entity(entity)
