"""
E-log service layer.

``ELogService`` is the entry point for every caller (CLI, web API, tests).
Each operation runs in exactly one unit of work: the entity change and the
audit record describing it commit together or not at all. Every operation
except :meth:`ELogService.login` takes the :class:`ActingUser` it runs on
behalf of, and that user is re-read from the identity store first.
"""

import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import desc

from ..access_control import ActingUser, IdentityStore, Role, require_role
from ..audit_trail.models import AuditAction, AuditQuery, AuditRecord, EntityType
from ..audit_trail.recorder import AuditRecorder
from ..audit_trail.snapshots import (
    EquipmentSnapshot,
    LogEntrySnapshot,
    PMScheduleSnapshot,
    UserSnapshot,
)
from ..audit_trail.storage import SQLAuditStorage
from ..config import ELogConfig, get_config
from ..database import Database
from ..electronic_signatures import SignatureVerifier
from ..exceptions import (
    AccountInactiveError,
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from .entities import (
    EquipmentDB,
    EquipmentStatus,
    LogEntryDB,
    PMScheduleDB,
    PMStatus,
    UserDB,
)
from .lifecycle import LogEntryLifecycle, ensure_editable
from .maintenance import PMScheduleView, next_due_after, today_in_timezone
from .mutations import DeleteOutcome, MutationInterceptor
from .schemas import (
    EquipmentCreate,
    EquipmentUpdate,
    InputSchema,
    LogEntryCreate,
    LogEntryUpdate,
    PMScheduleCreate,
    PMScheduleUpdate,
    SignatureRequest,
    UserCreate,
    UserUpdate,
)

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=InputSchema)


class _Operation:
    """Collaborators for one unit of work, all bound to its session."""

    def __init__(self, session: Any, config: ELogConfig):
        self.session = session
        self.identity = IdentityStore(session, config=config)
        self.recorder = AuditRecorder(session, config=config)
        self.interceptor = MutationInterceptor(session, self.recorder)
        self.lifecycle = LogEntryLifecycle(
            session, SignatureVerifier(self.identity), self.recorder, config
        )
        self.audit = SQLAuditStorage(session)


class ELogService:
    """Operations of the electronic logbook.

    Example:
        >>> service = ELogService(Database("sqlite:///./elog.db"))
        >>> service.database.create_all()
        >>> service.ensure_admin_user()
        >>> admin = service.login("admin", "admin")
        >>> pump = service.create_equipment(admin, {
        ...     "equipment_id": "EQ-1", "name": "Pump", "type": "Pump",
        ...     "location": "Suite 1",
        ... })
    """

    def __init__(
        self, database: Optional[Database] = None, config: Optional[ELogConfig] = None
    ):
        self.config = config or get_config()
        self.database = database or Database.from_config(self.config)

    @contextmanager
    def _operation(self) -> Iterator[_Operation]:
        with self.database.unit_of_work() as uow:
            yield _Operation(uow.session, self.config)

    @staticmethod
    def _parse(schema: Type[S], data: Union[S, Dict[str, Any]]) -> S:
        if isinstance(data, schema):
            return data
        try:
            return schema.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e) from e

    @classmethod
    def _changes(
        cls, schema: Type[S], data: Union[S, Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Parse a patch; a patch that changes nothing is refused."""
        changes = cls._parse(schema, data).changes()
        if not changes:
            raise ValidationError("No changes supplied")
        return changes

    def _require_actor(self, op: _Operation, actor: ActingUser) -> ActingUser:
        """Re-read the acting user; deleted or deactivated users are refused."""
        user = op.identity.find_by_id(actor.id)
        if user is None or not user.is_active:
            logger.warning(f"Rejected operation by stale session of {actor.username}")
            raise AuthenticationError("Session user is no longer active")
        return ActingUser.from_entity(user)

    def _today(self) -> date:
        return today_in_timezone(self.config.timezone)

    # Sessions

    def login(self, username: str, password: str) -> ActingUser:
        """
        Authenticate a user and record LOGIN.

        Raises:
            ValidationError: Username or password missing
            AuthenticationError: Unknown user or wrong password
            AccountInactiveError: The account is deactivated
        """
        if not username or not password:
            raise ValidationError(
                "Username and password required",
                field="username" if not username else "password",
            )

        with self._operation() as op:
            user = op.identity.find_by_username(username)
            if user is None:
                logger.warning(f"Login failed for unknown user {username}")
                raise AuthenticationError()
            if not user.is_active:
                logger.warning(f"Login refused for inactive user {username}")
                raise AccountInactiveError()
            if not op.identity.hasher.verify(password, user.password_hash):
                logger.warning(f"Login failed for user {username}")
                raise AuthenticationError()

            op.recorder.record(
                actor_id=user.id,
                action=AuditAction.LOGIN,
                entity_type=EntityType.SESSION,
                entity_id=user.id,
            )
            logger.info(f"User {username} logged in")
            return ActingUser.from_entity(user)

    def logout(self, actor: ActingUser) -> None:
        """Record LOGOUT for ``actor``."""
        with self._operation() as op:
            if op.identity.find_by_id(actor.id) is None:
                raise AuthenticationError("Session user no longer exists")
            op.recorder.record(
                actor_id=actor.id,
                action=AuditAction.LOGOUT,
                entity_type=EntityType.SESSION,
                entity_id=actor.id,
            )
            logger.info(f"User {actor.username} logged out")

    def current_user(self, actor: ActingUser) -> UserSnapshot:
        with self._operation() as op:
            self._require_actor(op, actor)
            user = op.identity.find_by_id(actor.id)
            return UserSnapshot.from_entity(user)

    def ensure_admin_user(self) -> Optional[UserSnapshot]:
        """
        Create the default Admin account if it does not exist yet.

        Returns:
            The new account, or None if nothing was created
        """
        if not self.config.seed_admin:
            return None

        with self._operation() as op:
            username = self.config.seed_admin_username
            if op.identity.find_by_username(username) is not None:
                return None

            admin = op.identity.create(
                username=username,
                password=self.config.seed_admin_password,
                full_name="System Administrator",
                role=Role.ADMIN,
            )
            op.interceptor.create(admin.id, admin)
            logger.warning(
                f"Created default admin account '{username}'; change its password"
            )
            return UserSnapshot.from_entity(admin)

    # Equipment

    def _get_equipment(self, op: _Operation, ref: str) -> EquipmentDB:
        """Equipment by id or business key."""
        equipment = op.session.get(EquipmentDB, ref)
        if equipment is None:
            equipment = (
                op.session.query(EquipmentDB)
                .filter(EquipmentDB.equipment_id == ref)
                .one_or_none()
            )
        if equipment is None:
            raise NotFoundError("Equipment", ref)
        return equipment

    def _check_equipment_key(self, op: _Operation, key: str) -> None:
        exists = (
            op.session.query(EquipmentDB)
            .filter(EquipmentDB.equipment_id == key)
            .count()
        )
        if exists:
            raise ValidationError(
                f"Equipment {key} already exists", field="equipment_id"
            )

    def create_equipment(
        self, actor: ActingUser, data: Union[EquipmentCreate, Dict[str, Any]]
    ) -> EquipmentSnapshot:
        fields = self._parse(EquipmentCreate, data)
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            self._check_equipment_key(op, fields.equipment_id)

            equipment = EquipmentDB(**fields.model_dump())
            op.interceptor.create(actor.id, equipment)
            logger.info(
                f"Equipment {equipment.equipment_id} created by {actor.username}"
            )
            return EquipmentSnapshot.from_entity(equipment)

    def update_equipment(
        self,
        actor: ActingUser,
        equipment_ref: str,
        data: Union[EquipmentUpdate, Dict[str, Any]],
    ) -> EquipmentSnapshot:
        changes = self._changes(EquipmentUpdate, data)
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            equipment = self._get_equipment(op, equipment_ref)

            new_key = changes.get("equipment_id")
            if new_key and new_key != equipment.equipment_id:
                self._check_equipment_key(op, new_key)

            op.interceptor.update(actor.id, equipment, changes)
            return EquipmentSnapshot.from_entity(equipment)

    def delete_equipment(self, actor: ActingUser, equipment_ref: str) -> DeleteOutcome:
        """
        Delete equipment, or mark it Offline if anything refers to it.

        Returns:
            ``Decommissioned`` or ``MarkedOffline``
        """
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            equipment = self._get_equipment(op, equipment_ref)
            return op.interceptor.delete_equipment(actor.id, equipment)

    def get_equipment(self, actor: ActingUser, equipment_ref: str) -> EquipmentSnapshot:
        with self._operation() as op:
            self._require_actor(op, actor)
            return EquipmentSnapshot.from_entity(self._get_equipment(op, equipment_ref))

    def list_equipment(
        self, actor: ActingUser, status: Optional[Union[EquipmentStatus, str]] = None
    ) -> List[EquipmentSnapshot]:
        with self._operation() as op:
            self._require_actor(op, actor)
            q = op.session.query(EquipmentDB)
            if status:
                q = q.filter(EquipmentDB.status == EquipmentStatus(status).value)
            return [
                EquipmentSnapshot.from_entity(e)
                for e in q.order_by(EquipmentDB.equipment_id).all()
            ]

    # Log entries

    def create_log_entry(
        self, actor: ActingUser, data: Union[LogEntryCreate, Dict[str, Any]]
    ) -> LogEntrySnapshot:
        """
        Create a Draft log entry.

        Raises:
            ValidationError: Invalid fields or Offline equipment
            NotFoundError: Equipment does not exist
        """
        fields = self._parse(LogEntryCreate, data)
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            equipment = self._get_equipment(op, fields.equipment_id)
            entry = op.lifecycle.create(actor, fields, equipment)
            return LogEntrySnapshot.from_entity(entry)

    def update_log_entry(
        self,
        actor: ActingUser,
        entry_ref: str,
        data: Union[LogEntryUpdate, Dict[str, Any]],
    ) -> LogEntrySnapshot:
        """
        Edit a Draft log entry. No signature is needed.

        Raises:
            RecordLockedError: The entry has been submitted or approved
            ValidationError: Invalid fields, Offline equipment or an end
                time before the start time
        """
        changes = self._changes(LogEntryUpdate, data)
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            entry = op.lifecycle.get(entry_ref, for_update=True)
            ensure_editable(entry)

            if "equipment_id" in changes:
                equipment = self._get_equipment(op, changes["equipment_id"])
                if equipment.status == EquipmentStatus.OFFLINE.value:
                    raise ValidationError(
                        f"Equipment {equipment.equipment_id} is Offline",
                        field="equipment_id",
                    )
                changes["equipment_id"] = equipment.id

            start_time = changes.get("start_time", entry.start_time)
            end_time = changes.get("end_time", entry.end_time)
            if end_time is not None and end_time < start_time:
                raise ValidationError(
                    "end_time must not precede start_time", field="end_time"
                )

            changes["version"] = entry.version + 1
            op.interceptor.update(actor.id, entry, changes)
            return LogEntrySnapshot.from_entity(entry)

    def submit_log_entry(
        self,
        actor: ActingUser,
        entry_ref: str,
        username: str,
        password: str,
        reason: str,
    ) -> LogEntrySnapshot:
        """
        Submit a Draft entry under an electronic signature.

        The signer is re-authenticated even though ``actor`` already holds a
        session; the signer becomes the actor of the audit record.
        """
        signature = self._parse(
            SignatureRequest,
            {"username": username, "password": password, "reason": reason},
        )
        with self._operation() as op:
            self._require_actor(op, actor)
            entry = op.lifecycle.submit(entry_ref, signature)
            return LogEntrySnapshot.from_entity(entry)

    def approve_log_entry(
        self,
        actor: ActingUser,
        entry_ref: str,
        username: str,
        password: str,
        reason: str,
    ) -> LogEntrySnapshot:
        """Approve a Submitted entry under a QA or Admin signature."""
        signature = self._parse(
            SignatureRequest,
            {"username": username, "password": password, "reason": reason},
        )
        with self._operation() as op:
            self._require_actor(op, actor)
            entry = op.lifecycle.approve(entry_ref, signature)
            return LogEntrySnapshot.from_entity(entry)

    def get_log_entry(self, actor: ActingUser, entry_ref: str) -> LogEntrySnapshot:
        with self._operation() as op:
            self._require_actor(op, actor)
            return LogEntrySnapshot.from_entity(op.lifecycle.get(entry_ref))

    def list_log_entries(
        self,
        actor: ActingUser,
        status: Optional[str] = None,
        equipment_ref: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LogEntrySnapshot]:
        """Log entries, newest first."""
        with self._operation() as op:
            self._require_actor(op, actor)
            q = op.session.query(LogEntryDB)
            if status:
                q = q.filter(LogEntryDB.status == status)
            if equipment_ref:
                equipment = self._get_equipment(op, equipment_ref)
                q = q.filter(LogEntryDB.equipment_id == equipment.id)
            q = q.order_by(desc(LogEntryDB.created_at), desc(LogEntryDB.log_id))
            if limit:
                q = q.limit(limit)
            return [LogEntrySnapshot.from_entity(e) for e in q.all()]

    # Preventive maintenance

    def _get_schedule(self, op: _Operation, schedule_id: str) -> PMScheduleDB:
        schedule = op.session.get(PMScheduleDB, schedule_id)
        if schedule is None:
            raise NotFoundError("PMSchedule", schedule_id)
        return schedule

    def create_pm_schedule(
        self, actor: ActingUser, data: Union[PMScheduleCreate, Dict[str, Any]]
    ) -> PMScheduleView:
        """
        Schedule a maintenance task.

        Without an explicit ``next_due`` the task is due one period after
        ``last_completed``, or today if it was never done.
        """
        fields = self._parse(PMScheduleCreate, data)
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            equipment = self._get_equipment(op, fields.equipment_id)

            next_due = fields.next_due
            if next_due is None:
                if fields.last_completed:
                    next_due = next_due_after(fields.last_completed, fields.frequency)
                else:
                    next_due = self._today()

            schedule = PMScheduleDB(
                equipment_id=equipment.id,
                task_name=fields.task_name,
                frequency=fields.frequency,
                last_completed=fields.last_completed,
                next_due=next_due,
                status=PMStatus.SCHEDULED.value,
            )
            op.interceptor.create(actor.id, schedule)
            return PMScheduleView.build(schedule, self._today())

    def update_pm_schedule(
        self,
        actor: ActingUser,
        schedule_id: str,
        data: Union[PMScheduleUpdate, Dict[str, Any]],
    ) -> PMScheduleView:
        changes = self._changes(PMScheduleUpdate, data)
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            schedule = self._get_schedule(op, schedule_id)
            op.interceptor.update(actor.id, schedule, changes)
            return PMScheduleView.build(schedule, self._today())

    def delete_pm_schedule(
        self, actor: ActingUser, schedule_id: str
    ) -> PMScheduleSnapshot:
        """Remove a schedule. Returns its last state."""
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            schedule = self._get_schedule(op, schedule_id)
            snapshot = PMScheduleSnapshot.from_entity(schedule)
            op.interceptor.delete(actor.id, schedule)
            return snapshot

    def complete_pm_task(
        self,
        actor: ActingUser,
        schedule_id: str,
        completed_on: Optional[date] = None,
    ) -> PMScheduleView:
        """
        Mark the current cycle of a task done and schedule the next one.

        Raises:
            ValidationError: ``completed_on`` is in the future
        """
        today = self._today()
        completed_on = completed_on or today
        if completed_on > today:
            raise ValidationError(
                "Completion date cannot be in the future", field="completed_on"
            )

        with self._operation() as op:
            actor = self._require_actor(op, actor)
            schedule = self._get_schedule(op, schedule_id)
            op.interceptor.update(
                actor.id,
                schedule,
                {
                    "last_completed": completed_on,
                    "next_due": next_due_after(completed_on, schedule.frequency),
                    "status": PMStatus.COMPLETED.value,
                },
            )
            logger.info(
                f"PM task {schedule.task_name} completed on {completed_on}, "
                f"next due {schedule.next_due}"
            )
            return PMScheduleView.build(schedule, today)

    def list_pm_schedules(
        self,
        actor: ActingUser,
        equipment_ref: Optional[str] = None,
        today: Optional[date] = None,
    ) -> List[PMScheduleView]:
        """Schedules ordered by next due date, with derived display status."""
        today = today or self._today()
        with self._operation() as op:
            self._require_actor(op, actor)
            q = op.session.query(PMScheduleDB)
            if equipment_ref:
                equipment = self._get_equipment(op, equipment_ref)
                q = q.filter(PMScheduleDB.equipment_id == equipment.id)
            q = q.order_by(PMScheduleDB.next_due, PMScheduleDB.task_name)
            return [PMScheduleView.build(s, today) for s in q.all()]

    # Users

    def _get_user(self, op: _Operation, user_ref: str) -> UserDB:
        """User by id or username."""
        user = op.identity.find_by_id(user_ref) or op.identity.find_by_username(
            user_ref
        )
        if user is None:
            raise NotFoundError("User", user_ref)
        return user

    def list_users(self, actor: ActingUser) -> List[UserSnapshot]:
        with self._operation() as op:
            self._require_actor(op, actor)
            return [UserSnapshot.from_entity(u) for u in op.identity.list_users()]

    def create_user(
        self, actor: ActingUser, data: Union[UserCreate, Dict[str, Any]]
    ) -> UserSnapshot:
        """
        Create a user account. Restricted to user administrators.

        Raises:
            AuthorizationError: The actor may not manage users
            ValidationError: Invalid fields or duplicate username
        """
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            require_role(actor, self.config.user_admin_roles, "create users")
            fields = self._parse(UserCreate, data)

            user = op.identity.create(**fields.model_dump())
            op.interceptor.create(actor.id, user)
            return UserSnapshot.from_entity(user)

    def update_user(
        self,
        actor: ActingUser,
        user_ref: str,
        data: Union[UserUpdate, Dict[str, Any]],
    ) -> UserSnapshot:
        """
        Update a user account. Restricted to user administrators.

        A new password is re-hashed; the audit snapshots never contain it.
        """
        with self._operation() as op:
            actor = self._require_actor(op, actor)
            require_role(actor, self.config.user_admin_roles, "update users")
            changes = self._changes(UserUpdate, data)

            user = self._get_user(op, user_ref)
            old_value = UserSnapshot.from_entity(user)
            op.identity.update(user.id, **changes)
            op.interceptor.record_update(actor.id, user, old_value)
            return UserSnapshot.from_entity(user)

    def deactivate_user(self, actor: ActingUser, user_ref: str) -> UserSnapshot:
        """Deactivate an account. Users are never deleted."""
        return self.update_user(actor, user_ref, UserUpdate(is_active=False))

    # Audit trail

    def audit_trail(
        self, actor: ActingUser, limit: Optional[int] = None
    ) -> List[AuditRecord]:
        """
        Most recent audit records, newest first.

        Args:
            actor: Acting user
            limit: Number of records, default ``audit_default_limit``,
                capped at ``audit_max_limit``

        Raises:
            ValidationError: If ``limit`` is not positive
        """
        if limit is None:
            limit = self.config.audit_default_limit
        if limit <= 0:
            raise ValidationError("Limit must be positive", field="limit")
        limit = min(limit, self.config.audit_max_limit)

        with self._operation() as op:
            self._require_actor(op, actor)
            return op.audit.list_recent(limit)

    def query_audit(self, actor: ActingUser, query: AuditQuery) -> List[AuditRecord]:
        if query.limit > self.config.audit_max_limit:
            query = query.model_copy(update={"limit": self.config.audit_max_limit})
        with self._operation() as op:
            self._require_actor(op, actor)
            return op.audit.query(query)

    def get_audit_record(self, actor: ActingUser, record_id: int) -> AuditRecord:
        with self._operation() as op:
            self._require_actor(op, actor)
            record = op.audit.get_by_id(record_id)
            if record is None:
                raise NotFoundError("AuditRecord", str(record_id))
            return record

    def entity_history(
        self,
        actor: ActingUser,
        entity_type: Union[EntityType, str],
        entity_id: str,
    ) -> List[AuditRecord]:
        """Audit records of one entity, oldest first."""
        try:
            entity_type = EntityType(entity_type).value
        except ValueError as e:
            raise ValidationError(
                f"Unknown entity type: {entity_type}", field="entity_type"
            ) from e
        with self._operation() as op:
            self._require_actor(op, actor)
            return op.audit.entity_history(entity_type, entity_id)

    def verify_integrity(self, actor: ActingUser) -> Dict[str, Any]:
        """Recompute every audit checksum and report mismatches."""
        with self._operation() as op:
            self._require_actor(op, actor)
            return op.audit.verify_integrity(self.config.checksum_algorithm.value)
