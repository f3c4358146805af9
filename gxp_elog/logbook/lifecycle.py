"""
Log entry lifecycle engine.

A log entry moves Draft -> Submitted -> Approved and never back. Each
transition needs a fresh electronic signature and is applied as one
conditional UPDATE on ``(id, status, version)`` so that two concurrent
signers cannot both win.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..access_control import ActingUser
from ..audit_trail.models import AuditAction, EntityType
from ..audit_trail.recorder import AuditRecorder
from ..audit_trail.snapshots import LogEntrySnapshot
from ..config import ELogConfig, get_config
from ..database import utcnow
from ..electronic_signatures import (
    SignatureMeaning,
    SignatureVerifier,
    audit_reason,
    validate_reason,
)
from ..exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RecordLockedError,
    ValidationError,
)
from .entities import EquipmentDB, EquipmentStatus, LogEntryDB, LogEntryStatus
from .schemas import LogEntryCreate, SignatureRequest

logger = logging.getLogger(__name__)

# Allowed transitions: target -> required current status
TRANSITIONS = {
    LogEntryStatus.SUBMITTED: LogEntryStatus.DRAFT,
    LogEntryStatus.APPROVED: LogEntryStatus.SUBMITTED,
}


def ensure_editable(entry: LogEntryDB) -> None:
    """
    Only Draft entries may be edited.

    Raises:
        RecordLockedError: If the entry has been submitted or approved
    """
    if entry.status != LogEntryStatus.DRAFT.value:
        raise RecordLockedError(entry.log_id, entry.status)


class LogEntryLifecycle:
    """Creates log entries and applies signed transitions to them."""

    def __init__(
        self,
        session: Session,
        verifier: SignatureVerifier,
        recorder: Optional[AuditRecorder] = None,
        config: Optional[ELogConfig] = None,
    ):
        self.session = session
        self.verifier = verifier
        self.config = config or get_config()
        self.recorder = recorder or AuditRecorder(session, config=self.config)

    def next_log_id(self, year: Optional[int] = None) -> str:
        """
        Next business key for a log entry, e.g. ``LOG-2024-0007``.

        Sequence numbers restart every year.
        """
        year = year or utcnow().year
        prefix = f"{self.config.log_id_prefix}-{year}-"

        existing = self.session.scalars(
            select(LogEntryDB.log_id).where(LogEntryDB.log_id.like(f"{prefix}%"))
        ).all()

        highest = 0
        for log_id in existing:
            suffix = log_id[len(prefix) :]
            if suffix.isdigit():
                highest = max(highest, int(suffix))

        return f"{prefix}{highest + 1:04d}"

    def get(self, entry_id: str, for_update: bool = False) -> LogEntryDB:
        """
        Load an entry by id or business key.

        Raises:
            NotFoundError: If no such entry exists
        """
        stmt = select(LogEntryDB).where(
            (LogEntryDB.id == entry_id) | (LogEntryDB.log_id == entry_id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        entry = self.session.scalars(stmt).one_or_none()
        if entry is None:
            raise NotFoundError("LogEntry", entry_id)
        return entry

    def create(
        self, actor: ActingUser, data: LogEntryCreate, equipment: EquipmentDB
    ) -> LogEntryDB:
        """
        Create a Draft entry authored by ``actor`` and record CREATE.

        Raises:
            ValidationError: If the equipment is Offline
        """
        if equipment.status == EquipmentStatus.OFFLINE.value:
            raise ValidationError(
                f"Equipment {equipment.equipment_id} is Offline", field="equipment_id"
            )

        entry = LogEntryDB(
            log_id=self.next_log_id(),
            equipment_id=equipment.id,
            activity_type=data.activity_type,
            start_time=data.start_time,
            end_time=data.end_time,
            description=data.description,
            batch_number=data.batch_number,
            readings=data.readings,
            status=LogEntryStatus.DRAFT.value,
            created_by=actor.id,
            version=1,
        )
        self.session.add(entry)
        self.session.flush()

        self.recorder.record(
            actor_id=actor.id,
            action=AuditAction.CREATE,
            entity_type=EntityType.LOG_ENTRY,
            entity_id=entry.id,
            new_value=LogEntrySnapshot.from_entity(entry),
        )
        logger.info(f"Log entry {entry.log_id} created by {actor.username}")
        return entry

    def submit(self, entry_id: str, signature: SignatureRequest) -> LogEntryDB:
        """
        Submit a Draft entry under the signer's electronic signature.

        Args:
            entry_id: Entry id or business key
            signature: Signer credentials and reason

        Returns:
            The Submitted entry

        Raises:
            ValidationError: Reason is not a canonical submission reason
            AuthenticationError: Signature could not be verified
            NotFoundError: No such entry
            InvalidTransitionError: Entry is not in Draft
        """
        reason = validate_reason(
            signature.reason, SignatureMeaning.SUBMISSION, self.config
        )
        signer = self.verifier.verify(signature.username, signature.password)
        entry = self.get(entry_id)

        old_value = LogEntrySnapshot.from_entity(entry)
        self.apply_transition(
            entry, LogEntryStatus.SUBMITTED, {"submitted_at": utcnow()}, action="submit"
        )

        self.recorder.record(
            actor_id=signer.id,
            action=AuditAction.UPDATE,
            entity_type=EntityType.LOG_ENTRY,
            entity_id=entry.id,
            old_value=old_value,
            new_value=LogEntrySnapshot.from_entity(entry),
            reason=audit_reason(SignatureMeaning.SUBMISSION, reason),
        )
        logger.info(f"Log entry {entry.log_id} submitted by {signer.username}")
        return entry

    def approve(self, entry_id: str, signature: SignatureRequest) -> LogEntryDB:
        """
        Approve a Submitted entry under a QA or Admin signature.

        Args:
            entry_id: Entry id or business key
            signature: Signer credentials and reason

        Returns:
            The Approved entry

        Raises:
            ValidationError: Reason is not a canonical approval reason
            AuthenticationError: Signature could not be verified
            AuthorizationError: Signer's role may not approve
            NotFoundError: No such entry
            InvalidTransitionError: Entry is not Submitted
        """
        reason = validate_reason(
            signature.reason, SignatureMeaning.APPROVAL, self.config
        )
        signer = self.verifier.verify(
            signature.username,
            signature.password,
            required_roles=self.config.approver_roles,
        )
        entry = self.get(entry_id)

        old_value = LogEntrySnapshot.from_entity(entry)
        self.apply_transition(
            entry,
            LogEntryStatus.APPROVED,
            {"approved_at": utcnow(), "approved_by": signer.id},
            action="approve",
        )

        self.recorder.record(
            actor_id=signer.id,
            action=AuditAction.APPROVE,
            entity_type=EntityType.LOG_ENTRY,
            entity_id=entry.id,
            old_value=old_value,
            new_value=LogEntrySnapshot.from_entity(entry),
            reason=audit_reason(SignatureMeaning.APPROVAL, reason),
        )
        logger.info(f"Log entry {entry.log_id} approved by {signer.username}")
        return entry

    def apply_transition(
        self,
        entry: LogEntryDB,
        target: LogEntryStatus,
        values: Dict[str, Any],
        action: str,
    ) -> None:
        """
        Move ``entry`` to ``target`` with a single conditional UPDATE.

        The row is only changed if it still has the status and version that
        were read; otherwise another writer got there first.

        Raises:
            InvalidTransitionError: If the entry is not in the required state
        """
        expected = TRANSITIONS[target]
        if entry.status != expected.value:
            raise InvalidTransitionError(
                entry.log_id, entry.status, expected.value, action
            )

        result = self.session.execute(
            update(LogEntryDB)
            .where(
                LogEntryDB.id == entry.id,
                LogEntryDB.status == expected.value,
                LogEntryDB.version == entry.version,
            )
            .values(status=target.value, version=entry.version + 1, **values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            current = self.session.scalar(
                select(LogEntryDB.status).where(LogEntryDB.id == entry.id)
            )
            logger.warning(
                f"Concurrent change to log entry {entry.log_id} lost the {action} race"
            )
            raise InvalidTransitionError(
                entry.log_id, current or entry.status, expected.value, action
            )

        self.session.refresh(entry)

