"""
Audit Trail Module - append-only record of every mutation.

Records who did what to which entity, when and why, with typed before/after
snapshots and a per-record checksum, per 21 CFR Part 11.
"""

from .models import AuditAction, AuditQuery, AuditRecord, EntityType
from .recorder import AuditRecorder
from .snapshots import (
    EquipmentSnapshot,
    LogEntrySnapshot,
    PMScheduleSnapshot,
    Snapshot,
    SnapshotBase,
    UserSnapshot,
    parse_snapshot,
    serialize_snapshot,
    snapshot_of,
)
from .storage import AuditRecordDB, SQLAuditStorage

__all__ = [
    # Recorder
    "AuditRecorder",
    # Models
    "AuditAction",
    "AuditQuery",
    "AuditRecord",
    "EntityType",
    # Snapshots
    "Snapshot",
    "SnapshotBase",
    "EquipmentSnapshot",
    "LogEntrySnapshot",
    "PMScheduleSnapshot",
    "UserSnapshot",
    "parse_snapshot",
    "serialize_snapshot",
    "snapshot_of",
    # Storage
    "AuditRecordDB",
    "SQLAuditStorage",
]
