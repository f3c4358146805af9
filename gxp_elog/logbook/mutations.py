"""
Audited create/update/delete for equipment, users, PM schedules and draft
log entries.

Every write captures the entity snapshot before and after the change and
hands both to the audit recorder in the same session.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from ..audit_trail.models import AuditAction, AuditRecord
from ..audit_trail.recorder import AuditRecorder
from ..audit_trail.snapshots import EquipmentSnapshot, SnapshotBase, snapshot_of
from .entities import EquipmentDB, EquipmentStatus, LogEntryDB, PMScheduleDB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decommissioned:
    """Equipment had no dependents and was removed."""

    equipment: EquipmentSnapshot
    audit_record: AuditRecord


@dataclass(frozen=True)
class MarkedOffline:
    """Equipment is still referenced and was set Offline instead of removed."""

    equipment: EquipmentSnapshot
    dependent_log_entries: int
    dependent_pm_schedules: int
    audit_record: AuditRecord


DeleteOutcome = Union[Decommissioned, MarkedOffline]


class MutationInterceptor:
    """Wraps plain entity writes so each produces one audit record."""

    def __init__(self, session: Session, recorder: Optional[AuditRecorder] = None):
        self.session = session
        self.recorder = recorder or AuditRecorder(session)

    def _entity_type(self, snapshot: SnapshotBase) -> str:
        return getattr(snapshot, "snapshot_type")

    def create(self, actor_id: str, entity: Any) -> AuditRecord:
        """
        Insert ``entity`` and record CREATE.

        Returns:
            The audit record of the creation
        """
        self.session.add(entity)
        self.session.flush()

        new_value = snapshot_of(entity)
        return self.recorder.record(
            actor_id=actor_id,
            action=AuditAction.CREATE,
            entity_type=self._entity_type(new_value),
            entity_id=entity.id,
            new_value=new_value,
        )

    def update(
        self,
        actor_id: str,
        entity: Any,
        changes: Dict[str, Any],
    ) -> AuditRecord:
        """
        Apply ``changes`` to ``entity`` and record UPDATE.

        Args:
            actor_id: ID of the acting user
            entity: Persistent entity to change
            changes: Attribute values to set

        Returns:
            The audit record of the update
        """
        old_value = snapshot_of(entity)

        for name, value in changes.items():
            setattr(entity, name, value)

        return self.record_update(actor_id, entity, old_value)

    def record_update(
        self, actor_id: str, entity: Any, old_value: SnapshotBase
    ) -> AuditRecord:
        """
        Record UPDATE for a change already applied to ``entity``.

        Used where the change itself is made by a collaborator, such as the
        identity store re-hashing a password.
        """
        self.session.flush()

        new_value = snapshot_of(entity)
        return self.recorder.record(
            actor_id=actor_id,
            action=AuditAction.UPDATE,
            entity_type=self._entity_type(new_value),
            entity_id=entity.id,
            old_value=old_value,
            new_value=new_value,
        )

    def delete(self, actor_id: str, entity: Any) -> AuditRecord:
        """Remove ``entity`` and record DELETE with its last snapshot."""
        old_value = snapshot_of(entity)
        entity_id = entity.id

        self.session.delete(entity)
        self.session.flush()

        return self.recorder.record(
            actor_id=actor_id,
            action=AuditAction.DELETE,
            entity_type=self._entity_type(old_value),
            entity_id=entity_id,
            old_value=old_value,
        )

    def delete_equipment(self, actor_id: str, equipment: EquipmentDB) -> DeleteOutcome:
        """
        Delete equipment, or take it Offline when anything still refers to it.

        Log entries and PM schedules reference equipment; removing it would
        orphan them, so referenced equipment is only marked Offline and the
        change is audited as an UPDATE.

        Returns:
            ``MarkedOffline`` or ``Decommissioned``
        """
        log_count = (
            self.session.query(LogEntryDB)
            .filter(LogEntryDB.equipment_id == equipment.id)
            .count()
        )
        pm_count = (
            self.session.query(PMScheduleDB)
            .filter(PMScheduleDB.equipment_id == equipment.id)
            .count()
        )

        if log_count or pm_count:
            record = self.update(
                actor_id, equipment, {"status": EquipmentStatus.OFFLINE.value}
            )
            logger.info(
                f"Equipment {equipment.equipment_id} marked Offline; "
                f"{log_count} log entries and {pm_count} PM schedules refer to it"
            )
            return MarkedOffline(
                equipment=EquipmentSnapshot.from_entity(equipment),
                dependent_log_entries=log_count,
                dependent_pm_schedules=pm_count,
                audit_record=record,
            )

        snapshot = EquipmentSnapshot.from_entity(equipment)
        record = self.delete(actor_id, equipment)
        logger.info(f"Equipment {snapshot.equipment_id} decommissioned")
        return Decommissioned(equipment=snapshot, audit_record=record)
