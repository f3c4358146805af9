"""
Logbook Module - equipment, log entries, PM schedules and users.

Only the persistent entities are exported here; the service layer is
imported from ``gxp_elog.logbook.service`` (or the top-level package).
"""

from .entities import (
    ActivityType,
    EquipmentDB,
    EquipmentStatus,
    LogEntryDB,
    LogEntryStatus,
    PMFrequency,
    PMScheduleDB,
    PMStatus,
    UserDB,
)

__all__ = [
    "ActivityType",
    "EquipmentDB",
    "EquipmentStatus",
    "LogEntryDB",
    "LogEntryStatus",
    "PMFrequency",
    "PMScheduleDB",
    "PMStatus",
    "UserDB",
]
