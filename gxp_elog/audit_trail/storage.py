"""
SQL storage for audit trail data.

Audit records live in the same database as the entities they describe and
are written through the caller's session, so the record and the mutation
commit together. The table is append-only: ORM updates and deletes of an
audit row are refused.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, asc, desc, event, or_
from sqlalchemy.orm import Mapped, Session, mapped_column

from ..database import Base
from ..exceptions import PersistenceError
from .models import AuditQuery, AuditRecord

logger = logging.getLogger(__name__)


class AuditRecordDB(Base):  # type: ignore[valid-type,misc]
    """SQLAlchemy model for audit records."""

    __tablename__ = "audit_trail"

    # Insertion order is the ordering of the trail
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    action: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Canonical JSON snapshots
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Integrity
    checksum: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (
        Index("idx_audit_timestamp_action", "timestamp", "action"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_user_timestamp", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AuditRecord {self.id} {self.action} {self.entity_type}>"


@event.listens_for(AuditRecordDB, "before_update")
def prevent_audit_update(mapper: Any, connection: Any, target: AuditRecordDB) -> None:
    """Refuse to modify a stored audit record."""
    logger.error(f"Attempted update of audit record {target.id}")
    raise PersistenceError(f"Audit record {target.id} is immutable")


@event.listens_for(AuditRecordDB, "before_delete")
def prevent_audit_delete(mapper: Any, connection: Any, target: AuditRecordDB) -> None:
    """Refuse to delete a stored audit record."""
    logger.error(f"Attempted deletion of audit record {target.id}")
    raise PersistenceError(f"Audit record {target.id} cannot be deleted")


class SQLAuditStorage:
    """SQL storage backend for the audit trail, bound to one session."""

    def __init__(self, session: Session):
        """
        Initialize SQL audit storage.

        Args:
            session: Session of the enclosing unit of work
        """
        self.session = session

    def _db_to_record(self, db_record: AuditRecordDB) -> AuditRecord:
        return AuditRecord.model_validate(db_record)

    def store(
        self,
        timestamp: datetime,
        user_id: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        old_value: Optional[str],
        new_value: Optional[str],
        reason: Optional[str],
        checksum: str,
    ) -> AuditRecord:
        """
        Append an audit record.

        The row is flushed immediately so that the sequential id is assigned
        and any store failure surfaces before the caller continues.

        Returns:
            The stored record

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the insert fails
        """
        db_record = AuditRecordDB(
            timestamp=timestamp,
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_value=old_value,
            new_value=new_value,
            reason=reason,
            checksum=checksum,
        )
        self.session.add(db_record)
        self.session.flush()
        return self._db_to_record(db_record)

    def query(self, query: AuditQuery) -> List[AuditRecord]:
        """Query audit records with filters."""
        q = self.session.query(AuditRecordDB)

        # Apply time range filter
        if query.start_date:
            q = q.filter(AuditRecordDB.timestamp >= query.start_date)
        if query.end_date:
            q = q.filter(AuditRecordDB.timestamp <= query.end_date)

        if query.user_ids:
            q = q.filter(AuditRecordDB.user_id.in_(query.user_ids))
        if query.actions:
            q = q.filter(
                AuditRecordDB.action.in_([action.value for action in query.actions])
            )
        if query.entity_types:
            q = q.filter(AuditRecordDB.entity_type.in_(query.entity_types))
        if query.entity_ids:
            q = q.filter(AuditRecordDB.entity_id.in_(query.entity_ids))

        if query.search_text:
            search_pattern = f"%{query.search_text}%"
            q = q.filter(
                or_(
                    AuditRecordDB.reason.ilike(search_pattern),
                    AuditRecordDB.new_value.ilike(search_pattern),
                )
            )

        if query.sort_desc:
            q = q.order_by(desc(AuditRecordDB.id))
        else:
            q = q.order_by(asc(AuditRecordDB.id))

        q = q.limit(query.limit).offset(query.offset)

        return [self._db_to_record(r) for r in q.all()]

    def get_by_id(self, record_id: int) -> Optional[AuditRecord]:
        """Get a specific audit record, or None."""
        db_record = self.session.get(AuditRecordDB, record_id)
        if db_record:
            return self._db_to_record(db_record)
        return None

    def list_recent(self, limit: int) -> List[AuditRecord]:
        """Newest records first."""
        return self.query(AuditQuery(limit=limit))

    def entity_history(self, entity_type: str, entity_id: str) -> List[AuditRecord]:
        """All records for one entity, oldest first."""
        q = (
            self.session.query(AuditRecordDB)
            .filter(
                AuditRecordDB.entity_type == entity_type,
                AuditRecordDB.entity_id == entity_id,
            )
            .order_by(asc(AuditRecordDB.id))
        )
        return [self._db_to_record(r) for r in q.all()]

    def count(self) -> int:
        return self.session.query(AuditRecordDB).count()

    def verify_integrity(
        self,
        algorithm: str = "sha256",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Verify integrity of stored audit records.

        Args:
            algorithm: Checksum algorithm the records were written with
            start_date: Optional start date
            end_date: Optional end date

        Returns:
            Integrity verification results
        """
        results: Dict[str, Any] = {
            "total_checked": 0,
            "valid": 0,
            "invalid": 0,
            "invalid_records": [],
        }

        q = self.session.query(AuditRecordDB)
        if start_date:
            q = q.filter(AuditRecordDB.timestamp >= start_date)
        if end_date:
            q = q.filter(AuditRecordDB.timestamp <= end_date)

        for db_record in q.order_by(asc(AuditRecordDB.id)).all():
            results["total_checked"] += 1
            record = self._db_to_record(db_record)

            if record.verify_checksum(algorithm):
                results["valid"] += 1
            else:
                results["invalid"] += 1
                results["invalid_records"].append(
                    {
                        "id": record.id,
                        "timestamp": record.timestamp.isoformat(),
                        "stored_checksum": record.checksum,
                        "calculated_checksum": record.calculate_checksum(algorithm),
                    }
                )

        if results["invalid"]:
            logger.warning(
                f"Audit integrity check found {results['invalid']} invalid records"
            )

        return results
