"""
Data models for audit trail functionality.

These models define the structure of audit records and audit queries in
compliance with 21 CFR Part 11 requirements.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ..database import naive_utc
from .snapshots import Snapshot, parse_snapshot


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class EntityType(str, Enum):
    """Tags for the kinds of entity an audit record can refer to."""

    USER = "User"
    EQUIPMENT = "Equipment"
    LOG_ENTRY = "LogEntry"
    PM_SCHEDULE = "PMSchedule"
    SESSION = "Session"


def calculate_checksum(
    timestamp: datetime,
    user_id: str,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    old_value: Optional[str],
    new_value: Optional[str],
    reason: Optional[str],
    algorithm: str = "sha256",
) -> str:
    """
    Calculate the checksum of an audit record's content.

    The record id is assigned by the store on insert and is not part of
    the digest.

    Returns:
        Hex digest of the checksum
    """
    data = {
        "timestamp": timestamp.isoformat(),
        "user_id": user_id,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "old_value": old_value,
        "new_value": new_value,
        "reason": reason,
    }

    json_str = json.dumps(data, sort_keys=True, separators=(",", ":"))

    if algorithm == "sha256":
        return hashlib.sha256(json_str.encode()).hexdigest()
    elif algorithm == "sha512":
        return hashlib.sha512(json_str.encode()).hexdigest()
    else:
        raise ValueError(f"Unsupported algorithm: {algorithm}")


class AuditRecord(BaseModel):
    """
    Immutable audit trail record.

    Captures who (``user_id``), what (``action``, ``entity_type``,
    ``entity_id``, before/after snapshots), when (``timestamp``) and why
    (``reason``). Snapshots are stored as canonical JSON text.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True, use_enum_values=True)

    id: int = Field(..., description="Sequential identifier assigned by the store")
    timestamp: datetime = Field(..., description="UTC timestamp of the action")
    user_id: str = Field(..., description="ID of the acting user")
    action: AuditAction = Field(..., description="Type of action performed")
    entity_type: str = Field(..., description="Type of entity affected")
    entity_id: Optional[str] = Field(None, description="ID of entity affected")
    old_value: Optional[str] = Field(None, description="Snapshot before the change")
    new_value: Optional[str] = Field(None, description="Snapshot after the change")
    reason: Optional[str] = Field(None, description="Declared reason for the action")
    checksum: str = Field(..., description="Checksum of the record content")

    def old_snapshot(self) -> Optional[Snapshot]:
        """Parse ``old_value`` back into its typed snapshot."""
        return parse_snapshot(self.old_value) if self.old_value else None

    def new_snapshot(self) -> Optional[Snapshot]:
        """Parse ``new_value`` back into its typed snapshot."""
        return parse_snapshot(self.new_value) if self.new_value else None

    def calculate_checksum(self, algorithm: str = "sha256") -> str:
        return calculate_checksum(
            timestamp=self.timestamp,
            user_id=self.user_id,
            action=AuditAction(self.action).value,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            old_value=self.old_value,
            new_value=self.new_value,
            reason=self.reason,
            algorithm=algorithm,
        )

    def verify_checksum(self, algorithm: str = "sha256") -> bool:
        """
        Verify the integrity of the audit record.

        Returns:
            True if the stored checksum matches the content
        """
        return self.calculate_checksum(algorithm) == self.checksum

    def to_log_format(self) -> str:
        """
        Convert to a standardized log format string.

        Returns:
            Formatted log string
        """
        parts = [
            f"[{self.timestamp.isoformat()}]",
            f"USER={self.user_id}",
            f"ACTION={self.action}",
        ]

        if self.entity_id:
            parts.append(f"ENTITY={self.entity_type}:{self.entity_id}")
        else:
            parts.append(f"ENTITY={self.entity_type}")

        if self.reason:
            parts.append(f"REASON='{self.reason}'")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class AuditQuery(BaseModel):
    """Query parameters for searching the audit trail."""

    # Time range
    start_date: Optional[datetime] = Field(None, description="Start of time range")
    end_date: Optional[datetime] = Field(None, description="End of time range")

    user_ids: Optional[List[str]] = Field(None, description="Filter by user IDs")
    actions: Optional[List[AuditAction]] = Field(
        None, description="Filter by action types"
    )
    entity_types: Optional[List[str]] = Field(
        None, description="Filter by entity types"
    )
    entity_ids: Optional[List[str]] = Field(None, description="Filter by entity IDs")

    search_text: Optional[str] = Field(None, description="Text search in reasons")

    # Pagination
    limit: int = Field(100, description="Maximum results to return", gt=0)
    offset: int = Field(0, description="Result offset for pagination", ge=0)

    # Newest first unless asked otherwise
    sort_desc: bool = Field(True, description="Sort in descending order")

    to_utc = field_validator("start_date")(naive_utc)

    @field_validator("end_date")
    @classmethod
    def validate_date_range(
        cls, v: Optional[datetime], info: ValidationInfo
    ) -> Optional[datetime]:
        """Ensure end date is after start date."""
        v = naive_utc(v)
        if v and "start_date" in info.data and info.data["start_date"]:
            if v < info.data["start_date"]:
                raise ValueError("End date must be after start date")
        return v

    def filters(self) -> Dict[str, Any]:
        """Non-empty filters, for display and logging."""
        data: Dict[str, Any] = self.model_dump(
            exclude={"limit", "offset", "sort_desc"}, exclude_none=True, mode="json"
        )
        return data
