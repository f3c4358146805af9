"""
Audit recorder.

The single writer of the audit trail. Every mutating operation in the e-log
calls :meth:`AuditRecorder.record` inside the same unit of work as the
mutation; if the audit write fails the operation fails with it.
"""

import logging
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import ELogConfig, get_config
from ..database import utcnow
from ..exceptions import PersistenceError
from .models import AuditAction, AuditRecord, EntityType, calculate_checksum
from .snapshots import SnapshotBase, serialize_snapshot
from .storage import SQLAuditStorage

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Appends immutable audit records through the caller's session.

    Example:
        >>> with database.unit_of_work() as uow:
        ...     uow.session.add(equipment)
        ...     uow.session.flush()
        ...     AuditRecorder(uow.session).record(
        ...         actor_id=user.id,
        ...         action=AuditAction.CREATE,
        ...         entity_type=EntityType.EQUIPMENT,
        ...         entity_id=equipment.id,
        ...         new_value=EquipmentSnapshot.from_entity(equipment),
        ...     )
    """

    def __init__(
        self,
        session: Session,
        storage: Optional[SQLAuditStorage] = None,
        config: Optional[ELogConfig] = None,
    ):
        self.storage = storage or SQLAuditStorage(session)
        self.config = config or get_config()

    def record(
        self,
        actor_id: str,
        action: AuditAction,
        entity_type: Union[EntityType, str],
        entity_id: Optional[str] = None,
        old_value: Optional[SnapshotBase] = None,
        new_value: Optional[SnapshotBase] = None,
        reason: Optional[str] = None,
    ) -> AuditRecord:
        """
        Record one audited action.

        Args:
            actor_id: ID of the user performing the action
            action: Action performed
            entity_type: Kind of entity affected
            entity_id: ID of the entity affected
            old_value: Snapshot before the change, absent on create
            new_value: Snapshot after the change, absent on delete
            reason: Declared reason, required for signed transitions

        Returns:
            The stored audit record

        Raises:
            PersistenceError: If the record cannot be written
        """
        timestamp = utcnow()
        action_value = AuditAction(action).value
        entity_type_value = (
            entity_type.value if isinstance(entity_type, EntityType) else entity_type
        )
        old_text = serialize_snapshot(old_value) if old_value is not None else None
        new_text = serialize_snapshot(new_value) if new_value is not None else None

        checksum = calculate_checksum(
            timestamp=timestamp,
            user_id=actor_id,
            action=action_value,
            entity_type=entity_type_value,
            entity_id=entity_id,
            old_value=old_text,
            new_value=new_text,
            reason=reason,
            algorithm=self.config.checksum_algorithm.value,
        )

        try:
            record = self.storage.store(
                timestamp=timestamp,
                user_id=actor_id,
                action=action_value,
                entity_type=entity_type_value,
                entity_id=entity_id,
                old_value=old_text,
                new_value=new_text,
                reason=reason,
                checksum=checksum,
            )
        except SQLAlchemyError as e:
            logger.error(
                f"Audit write failed for {action_value} "
                f"{entity_type_value}:{entity_id}: {e}"
            )
            raise PersistenceError(
                f"Failed to record audit trail: {e.__class__.__name__}"
            ) from e

        logger.debug(record.to_log_format())
        return record
