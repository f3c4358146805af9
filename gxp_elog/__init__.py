"""
GxP E-Log - electronic logbook for regulated pharmaceutical manufacturing.

Tracks equipment, activity log entries, preventive maintenance schedules and
users, with an append-only audit trail of every change and electronic
signatures on log entry submission and approval.

Key Features
------------
* **Log Entry Lifecycle**: Draft -> Submitted -> Approved, each transition
  signed by re-entering credentials and declaring a reason
* **Audit Trail**: One immutable record per mutation with typed before/after
  snapshots and a per-record checksum
* **Access Control**: Operator, Supervisor, QA and Admin roles; only QA and
  Admin approve, only Admin manages users
* **Equipment Soft Delete**: Equipment still referenced by log entries or PM
  schedules is taken Offline instead of removed
* **Preventive Maintenance**: Recurring tasks with Overdue / Due Today /
  Upcoming / Completed status derived at read time

Quick Start
-----------
>>> from gxp_elog import Database, ELogService
>>>
>>> service = ELogService(Database("sqlite:///./elog.db"))
>>> service.database.create_all()
>>> service.ensure_admin_user()
>>> admin = service.login("admin", "admin")
>>> entry = service.create_log_entry(admin, {
...     "equipment_id": "EQ-1",
...     "activity_type": "Calibration",
...     "description": "pH check",
...     "start_time": "2024-03-17T08:00:00",
... })
>>> service.submit_log_entry(
...     admin, entry.id, "admin", "admin", "I am the author of this entry"
... )

Compliance Standards
-------------------
The e-log implements patterns for FDA 21 CFR Part 11 and EU GMP Annex 11.
Its electronic signatures are password re-entry plus a declared reason, not
cryptographic signatures. Users remain responsible for validating it in
their environment.
"""

__version__ = "1.0.0"

from .access_control import ActingUser, Role
from .audit_trail import AuditAction, AuditRecord, EntityType
from .config import ELogConfig, configure, get_config, set_config
from .database import Database
from .exceptions import (
    AccountInactiveError,
    AuthenticationError,
    AuthorizationError,
    ELogError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RecordLockedError,
    ValidationError,
)
from .logbook.mutations import Decommissioned, MarkedOffline
from .logbook.service import ELogService

__all__ = [
    # Service
    "ELogService",
    "Database",
    "ActingUser",
    "Role",
    # Outcomes
    "Decommissioned",
    "MarkedOffline",
    # Audit Trail
    "AuditAction",
    "AuditRecord",
    "EntityType",
    # Configuration
    "ELogConfig",
    "configure",
    "get_config",
    "set_config",
    # Errors
    "ELogError",
    "ValidationError",
    "InvalidTransitionError",
    "RecordLockedError",
    "AuthenticationError",
    "AccountInactiveError",
    "AuthorizationError",
    "NotFoundError",
    "PersistenceError",
]
