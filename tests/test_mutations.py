"""
Tests for audited equipment and PM schedule writes, including the
soft delete of equipment that is still referenced.
"""

import pytest

from gxp_elog import Decommissioned, MarkedOffline
from gxp_elog.audit_trail import AuditAction, EntityType
from gxp_elog.exceptions import NotFoundError, ValidationError


def equipment_history(service, actor, equipment):
    return service.entity_history(actor, EntityType.EQUIPMENT, equipment.id)


class TestEquipmentWrites:
    """Create and update are audited with before/after snapshots."""

    def test_create_audited(self, service, admin, equipment):
        (record,) = equipment_history(service, admin, equipment)

        assert record.action == AuditAction.CREATE.value
        assert record.user_id == admin.id
        assert record.old_value is None
        assert record.new_snapshot() == equipment

    def test_update_audited(self, service, admin, equipment):
        updated = service.update_equipment(
            admin, "EQ-1", {"location": "QC Lab 3", "serial_number": "SN-42"}
        )

        record = equipment_history(service, admin, equipment)[-1]
        assert record.action == AuditAction.UPDATE.value
        assert record.old_snapshot() == equipment
        assert record.new_snapshot() == updated
        assert updated.location == "QC Lab 3"
        assert updated.name == equipment.name

    def test_duplicate_business_key(self, service, admin, equipment):
        with pytest.raises(ValidationError) as exc_info:
            service.create_equipment(
                admin,
                {
                    "equipment_id": "EQ-1",
                    "name": "Second Meter",
                    "type": "Analytical",
                    "location": "QC Lab 1",
                },
            )
        assert exc_info.value.field == "equipment_id"

    def test_rename_to_existing_key(self, service, admin, equipment):
        service.create_equipment(
            admin,
            {"equipment_id": "EQ-2", "name": "Mixer", "type": "Mixer", "location": "A"},
        )
        with pytest.raises(ValidationError):
            service.update_equipment(admin, "EQ-2", {"equipment_id": "EQ-1"})

    def test_invalid_status(self, service, admin, equipment):
        with pytest.raises(ValidationError) as exc_info:
            service.update_equipment(admin, "EQ-1", {"status": "Broken"})
        assert exc_info.value.field == "status"

    def test_empty_patch_not_audited(self, service, admin, equipment):
        with pytest.raises(ValidationError, match="No changes"):
            service.update_equipment(admin, "EQ-1", {})

        assert len(equipment_history(service, admin, equipment)) == 1

    def test_list_by_status(self, service, admin, equipment):
        service.create_equipment(
            admin,
            {
                "equipment_id": "EQ-2",
                "name": "Mixer",
                "type": "Mixer",
                "location": "Suite 4",
                "status": "Maintenance",
            },
        )

        everything = service.list_equipment(admin)
        in_maintenance = service.list_equipment(admin, status="Maintenance")

        assert [e.equipment_id for e in everything] == ["EQ-1", "EQ-2"]
        assert [e.equipment_id for e in in_maintenance] == ["EQ-2"]


class TestEquipmentDelete:
    """Delete removes unreferenced equipment and takes referenced equipment
    Offline."""

    def test_referenced_by_log_entry_goes_offline(
        self, service, admin, equipment, draft_entry
    ):
        outcome = service.delete_equipment(admin, "EQ-1")

        assert isinstance(outcome, MarkedOffline)
        assert outcome.dependent_log_entries == 1
        assert outcome.dependent_pm_schedules == 0
        assert outcome.equipment.status == "Offline"

        # Still there
        assert service.get_equipment(admin, "EQ-1").status == "Offline"

        records = equipment_history(service, admin, equipment)
        assert [r.action for r in records] == ["CREATE", "UPDATE"]
        assert records[-1] == outcome.audit_record
        assert records[-1].old_snapshot().status == "Operational"
        assert records[-1].new_snapshot().status == "Offline"

    def test_referenced_by_pm_schedule_goes_offline(self, service, admin, equipment):
        service.create_pm_schedule(
            admin,
            {"equipment_id": "EQ-1", "task_name": "Electrode", "frequency": "Weekly"},
        )

        outcome = service.delete_equipment(admin, equipment.id)

        assert isinstance(outcome, MarkedOffline)
        assert outcome.dependent_pm_schedules == 1

    def test_unreferenced_equipment_is_removed(self, service, admin, equipment):
        outcome = service.delete_equipment(admin, "EQ-1")

        assert isinstance(outcome, Decommissioned)
        assert outcome.equipment == equipment
        with pytest.raises(NotFoundError):
            service.get_equipment(admin, "EQ-1")

        record = outcome.audit_record
        assert record.action == AuditAction.DELETE.value
        assert record.entity_id == equipment.id
        assert record.new_value is None
        assert record.old_snapshot() == equipment

    def test_offline_equipment_rejects_new_entries(
        self, service, admin, operator, equipment, draft_entry
    ):
        service.delete_equipment(admin, "EQ-1")

        with pytest.raises(ValidationError):
            service.create_log_entry(
                operator,
                {
                    "equipment_id": "EQ-1",
                    "activity_type": "Operation",
                    "description": "Run",
                    "start_time": "2024-03-18T08:00:00",
                },
            )

    def test_draft_cannot_move_to_offline_equipment(
        self, service, admin, operator, equipment, draft_entry
    ):
        service.create_equipment(
            admin,
            {
                "equipment_id": "EQ-OLD",
                "name": "Old Meter",
                "type": "Analytical",
                "location": "Store",
                "status": "Offline",
            },
        )

        with pytest.raises(ValidationError) as exc_info:
            service.update_log_entry(
                operator, draft_entry.id, {"equipment_id": "EQ-OLD"}
            )
        assert exc_info.value.field == "equipment_id"

    def test_missing_equipment(self, service, admin):
        with pytest.raises(NotFoundError):
            service.delete_equipment(admin, "EQ-404")


class TestPMScheduleWrites:
    """PM schedules go through the same audited writes."""

    def test_create_update_delete(self, service, admin, equipment):
        schedule = service.create_pm_schedule(
            admin,
            {
                "equipment_id": "EQ-1",
                "task_name": "Calibrate electrode",
                "frequency": "Monthly",
                "next_due": "2030-01-15",
            },
        )
        service.update_pm_schedule(
            admin, schedule.id, {"task_name": "Full calibration"}
        )
        removed = service.delete_pm_schedule(admin, schedule.id)

        records = service.entity_history(admin, EntityType.PM_SCHEDULE, schedule.id)
        assert [r.action for r in records] == ["CREATE", "UPDATE", "DELETE"]
        assert records[1].new_snapshot().task_name == "Full calibration"
        assert records[2].old_snapshot() == removed
        assert removed.task_name == "Full calibration"

    def test_unknown_schedule(self, service, admin):
        with pytest.raises(NotFoundError):
            service.update_pm_schedule(admin, "pm-404", {"task_name": "x"})
