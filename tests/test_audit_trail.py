"""
Tests for the audit trail.

Covers checksums, the recorder, append-only storage, integrity
verification and the read side of the service.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from gxp_elog.audit_trail import (
    AuditAction,
    AuditQuery,
    AuditRecordDB,
    AuditRecorder,
    EntityType,
    EquipmentSnapshot,
    SQLAuditStorage,
)
from gxp_elog.audit_trail.models import calculate_checksum
from gxp_elog.database import utcnow
from gxp_elog.exceptions import NotFoundError, PersistenceError, ValidationError
from gxp_elog.logbook.service import ELogService


def checksum_fields(**overrides):
    fields = {
        "timestamp": datetime(2024, 3, 17, 8, 0, 0),
        "user_id": "user-1",
        "action": "UPDATE",
        "entity_type": "Equipment",
        "entity_id": "eq-1",
        "old_value": '{"status":"Operational"}',
        "new_value": '{"status":"Offline"}',
        "reason": None,
    }
    fields.update(overrides)
    return fields


class TestChecksum:
    """Checksums over canonical record content."""

    def test_deterministic(self):
        assert calculate_checksum(**checksum_fields()) == calculate_checksum(
            **checksum_fields()
        )

    def test_content_change_changes_checksum(self):
        original = calculate_checksum(**checksum_fields())
        assert calculate_checksum(**checksum_fields(reason="edited")) != original
        assert calculate_checksum(**checksum_fields(user_id="user-2")) != original

    def test_algorithms(self):
        assert len(calculate_checksum(**checksum_fields())) == 64
        assert len(calculate_checksum(**checksum_fields(), algorithm="sha512")) == 128

    def test_unsupported_algorithm(self):
        with pytest.raises(ValueError, match="Unsupported algorithm"):
            calculate_checksum(**checksum_fields(), algorithm="md5")


class TestRecorder:
    """Writing audit records."""

    def test_record_and_reparse(self, database, config):
        snapshot = EquipmentSnapshot(
            id="eq-1",
            equipment_id="EQ-1",
            name="Mixer",
            type="Mixer",
            location="Suite 1",
            status="Operational",
            created_at=datetime(2024, 1, 1, 12, 0, 0),
        )

        with database.unit_of_work() as uow:
            record = AuditRecorder(uow.session, config=config).record(
                actor_id="user-1",
                action=AuditAction.CREATE,
                entity_type=EntityType.EQUIPMENT,
                entity_id="eq-1",
                new_value=snapshot,
            )

        assert record.id == 1
        assert record.action == "CREATE"
        assert record.entity_type == "Equipment"
        assert record.old_value is None
        assert record.verify_checksum()
        assert record.new_snapshot() == snapshot

    def test_store_failure_is_not_silent(self, database, config):
        storage = Mock(spec=SQLAuditStorage)
        storage.store.side_effect = OperationalError("INSERT", {}, Exception("disk"))

        with database.unit_of_work() as uow:
            recorder = AuditRecorder(uow.session, storage=storage, config=config)
            with pytest.raises(PersistenceError):
                recorder.record(
                    actor_id="user-1",
                    action=AuditAction.LOGIN,
                    entity_type=EntityType.SESSION,
                )

    def test_failed_audit_rolls_back_mutation(self, service, admin, monkeypatch):
        """A mutation whose audit record cannot be written is not committed."""

        def fail(*args, **kwargs):
            raise SQLAlchemyError("audit table unavailable")

        monkeypatch.setattr(SQLAuditStorage, "store", fail)

        with pytest.raises(PersistenceError):
            service.create_equipment(
                admin,
                {
                    "equipment_id": "EQ-9",
                    "name": "Balance",
                    "type": "Balance",
                    "location": "Weigh Room",
                },
            )

        monkeypatch.undo()
        assert service.list_equipment(admin) == []


@pytest.mark.gxp
class TestAppendOnly:
    """Stored audit records cannot be changed or removed."""

    def test_update_refused(self, database, service, admin):
        with pytest.raises(PersistenceError, match="immutable"):
            with database.unit_of_work() as uow:
                row = uow.session.get(AuditRecordDB, 1)
                row.reason = "tampered"
                uow.session.flush()

        assert service.get_audit_record(admin, 1).reason is None

    def test_delete_refused(self, database, service, admin):
        with pytest.raises(PersistenceError, match="cannot be deleted"):
            with database.unit_of_work() as uow:
                uow.session.delete(uow.session.get(AuditRecordDB, 1))
                uow.session.flush()

        assert service.get_audit_record(admin, 1).action == "CREATE"

    def test_reread_is_identical(self, service, admin, operator, equipment):
        """Later activity never changes an earlier record."""
        first = service.get_audit_record(admin, 1)

        service.update_equipment(admin, "EQ-1", {"location": "QC Lab 3"})
        service.logout(operator)

        again = service.get_audit_record(admin, 1)
        assert again == first
        assert again.model_dump_json() == first.model_dump_json()

    def test_ids_are_sequential(self, service, admin, equipment):
        records = service.audit_trail(admin)
        ids = [r.id for r in records]
        assert ids == sorted(ids, reverse=True)
        assert ids == list(range(len(ids), 0, -1))


@pytest.mark.gxp
class TestIntegrity:
    """Checksum verification of the stored trail."""

    def test_clean_trail_verifies(self, service, admin, equipment):
        results = service.verify_integrity(admin)
        assert results["total_checked"] == results["valid"]
        assert results["invalid"] == 0

    def test_tampering_detected(self, database, service, admin, equipment):
        # Core SQL bypasses the ORM guards, as a direct database edit would
        with database.engine.begin() as conn:
            conn.execute(text("UPDATE audit_trail SET reason = 'edited' WHERE id = 1"))

        results = service.verify_integrity(admin)

        assert results["invalid"] == 1
        assert results["invalid_records"][0]["id"] == 1


class TestReadSide:
    """Listing and querying the audit trail."""

    def test_trail_newest_first(self, service, admin, equipment):
        records = service.audit_trail(admin)
        assert records[0].entity_type == "Equipment"
        assert records[0].action == "CREATE"
        assert records[-1].action == "CREATE"
        assert records[-1].entity_type == "User"

    def test_limit_is_clamped(self, service, admin, equipment, config):
        capped = ELogService(
            service.database, config.model_copy(update={"audit_max_limit": 2})
        )
        assert len(capped.audit_trail(admin, limit=50)) == 2

    @pytest.mark.parametrize("limit", [0, -5])
    def test_non_positive_limit(self, service, admin, limit):
        with pytest.raises(ValidationError) as exc_info:
            service.audit_trail(admin, limit=limit)
        assert exc_info.value.field == "limit"

    def test_query_by_action(self, service, admin, operator):
        logins = service.query_audit(admin, AuditQuery(actions=[AuditAction.LOGIN]))
        assert {r.user_id for r in logins} == {admin.id, operator.id}
        assert all(r.entity_type == "Session" for r in logins)

    def test_query_ascending_with_search(self, service, admin, equipment):
        records = service.query_audit(
            admin, AuditQuery(search_text="pH Meter", sort_desc=False)
        )
        assert len(records) == 1
        assert records[0].entity_id == equipment.id

    def test_query_time_range(self, service, admin, equipment):
        future = utcnow() + timedelta(days=1)
        assert service.query_audit(admin, AuditQuery(start_date=future)) == []

    def test_query_range_with_offsets(self, service, admin, equipment):
        query = AuditQuery(
            start_date=datetime(2024, 1, 1, 5, 0, tzinfo=timezone(timedelta(hours=5))),
            end_date=datetime(2024, 1, 1, 1, 0),
        )
        assert query.start_date == datetime(2024, 1, 1, 0, 0)
        assert service.query_audit(admin, query) == []

        with pytest.raises(ValueError):
            AuditQuery(
                start_date=datetime(2024, 1, 1, 5, 0, tzinfo=timezone.utc),
                end_date=datetime(2024, 1, 1, 1, 0),
            )

    def test_query_rejects_inverted_range(self):
        with pytest.raises(ValueError):
            AuditQuery(
                start_date=datetime(2024, 2, 1), end_date=datetime(2024, 1, 1)
            )

    def test_entity_history(self, service, admin, equipment):
        service.update_equipment(admin, "EQ-1", {"status": "Maintenance"})

        records = service.entity_history(admin, "Equipment", equipment.id)

        assert [r.action for r in records] == ["CREATE", "UPDATE"]
        assert records[1].old_snapshot().status == "Operational"
        assert records[1].new_snapshot().status == "Maintenance"

    def test_entity_history_unknown_type(self, service, admin):
        with pytest.raises(ValidationError) as exc_info:
            service.entity_history(admin, "Invoice", "x")
        assert exc_info.value.field == "entity_type"

    def test_missing_record(self, service, admin):
        with pytest.raises(NotFoundError):
            service.get_audit_record(admin, 9999)

    def test_log_format(self, service, admin):
        record = service.query_audit(admin, AuditQuery(actions=[AuditAction.LOGIN]))[0]
        line = record.to_log_format()
        assert "ACTION=LOGIN" in line
        assert f"ENTITY=Session:{admin.id}" in line
