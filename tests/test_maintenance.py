"""Tests for preventive maintenance scheduling."""

from datetime import date, datetime, timedelta

import pytest
import pytz

from gxp_elog.exceptions import ValidationError
from gxp_elog.logbook.entities import PMFrequency, PMStatus
from gxp_elog.logbook.maintenance import (
    PMDisplayStatus,
    display_status,
    next_due_after,
    today_in_timezone,
)


class TestNextDue:
    """Calendar arithmetic for due dates."""

    @pytest.mark.parametrize(
        "completed,frequency,expected",
        [
            (date(2024, 3, 17), PMFrequency.DAILY, date(2024, 3, 18)),
            (date(2024, 3, 17), PMFrequency.WEEKLY, date(2024, 3, 24)),
            (date(2024, 1, 31), PMFrequency.MONTHLY, date(2024, 2, 29)),
            (date(2024, 11, 30), PMFrequency.QUARTERLY, date(2025, 2, 28)),
            (date(2024, 8, 31), PMFrequency.SEMI_ANNUALLY, date(2025, 2, 28)),
            (date(2024, 2, 29), PMFrequency.ANNUALLY, date(2025, 2, 28)),
        ],
    )
    def test_next_due_after(self, completed, frequency, expected):
        assert next_due_after(completed, frequency) == expected

    def test_accepts_string_frequency(self):
        assert next_due_after(date(2024, 1, 1), "Semi-Annually") == date(2024, 7, 1)


class TestDisplayStatus:
    """Status derived against today's date."""

    TODAY = date(2024, 3, 17)

    @pytest.mark.parametrize(
        "status,next_due,expected",
        [
            (PMStatus.SCHEDULED, date(2024, 3, 16), PMDisplayStatus.OVERDUE),
            (PMStatus.SCHEDULED, date(2024, 3, 17), PMDisplayStatus.DUE_TODAY),
            (PMStatus.SCHEDULED, date(2024, 3, 18), PMDisplayStatus.UPCOMING),
            (PMStatus.COMPLETED, date(2024, 4, 17), PMDisplayStatus.COMPLETED),
            (PMStatus.COMPLETED, date(2024, 3, 17), PMDisplayStatus.DUE_TODAY),
            (PMStatus.COMPLETED, date(2024, 3, 1), PMDisplayStatus.OVERDUE),
        ],
    )
    def test_display_status(self, status, next_due, expected):
        assert display_status(status, next_due, self.TODAY) == expected

    def test_site_timezone(self):
        late_evening_utc = datetime(2024, 3, 17, 23, 30, tzinfo=pytz.utc)

        assert today_in_timezone("UTC", late_evening_utc) == date(2024, 3, 17)
        assert today_in_timezone("Asia/Tokyo", late_evening_utc) == date(2024, 3, 18)
        assert today_in_timezone("America/New_York", late_evening_utc) == date(
            2024, 3, 17
        )

    def test_naive_time_is_utc(self):
        assert today_in_timezone("Asia/Tokyo", datetime(2024, 3, 17, 20, 0)) == date(
            2024, 3, 18
        )


class TestSchedules:
    """PM schedules through the service."""

    def test_default_next_due_from_last_completed(self, service, admin, equipment):
        schedule = service.create_pm_schedule(
            admin,
            {
                "equipment_id": "EQ-1",
                "task_name": "Replace filter",
                "frequency": "Quarterly",
                "last_completed": "2024-01-31",
            },
        )
        assert schedule.next_due == date(2024, 4, 30)
        assert schedule.status == PMStatus.SCHEDULED.value

    def test_default_next_due_is_today(self, service, admin, equipment):
        schedule = service.create_pm_schedule(
            admin,
            {"equipment_id": "EQ-1", "task_name": "Inspect", "frequency": "Daily"},
        )
        assert schedule.next_due == service._today()
        assert schedule.display_status == PMDisplayStatus.DUE_TODAY

    def test_complete_task(self, service, admin, equipment):
        schedule = service.create_pm_schedule(
            admin,
            {
                "equipment_id": "EQ-1",
                "task_name": "Calibrate",
                "frequency": "Monthly",
                "next_due": "2024-01-10",
            },
        )
        assert schedule.display_status == PMDisplayStatus.OVERDUE

        completed = service.complete_pm_task(admin, schedule.id)

        today = service._today()
        assert completed.last_completed == today
        assert completed.next_due == next_due_after(today, "Monthly")
        assert completed.status == PMStatus.COMPLETED.value
        assert completed.display_status == PMDisplayStatus.COMPLETED

        record = service.entity_history(admin, "PMSchedule", schedule.id)[-1]
        assert record.action == "UPDATE"
        assert record.old_snapshot().status == "Scheduled"
        assert record.new_snapshot().status == "Completed"

    def test_completed_cycle_reopens_when_due(self, service, admin, equipment):
        schedule = service.create_pm_schedule(
            admin,
            {"equipment_id": "EQ-1", "task_name": "Clean", "frequency": "Weekly"},
        )
        completed = service.complete_pm_task(admin, schedule.id)

        (listed,) = service.list_pm_schedules(admin, today=completed.next_due)
        assert listed.display_status == PMDisplayStatus.DUE_TODAY

        later = completed.next_due + timedelta(days=1)
        (listed,) = service.list_pm_schedules(admin, today=later)
        assert listed.display_status == PMDisplayStatus.OVERDUE

    def test_backdated_completion(self, service, admin, equipment):
        schedule = service.create_pm_schedule(
            admin,
            {"equipment_id": "EQ-1", "task_name": "Clean", "frequency": "Weekly"},
        )
        completed = service.complete_pm_task(admin, schedule.id, date(2024, 3, 1))

        assert completed.last_completed == date(2024, 3, 1)
        assert completed.next_due == date(2024, 3, 8)

    def test_future_completion_rejected(self, service, admin, equipment):
        schedule = service.create_pm_schedule(
            admin,
            {"equipment_id": "EQ-1", "task_name": "Clean", "frequency": "Weekly"},
        )
        with pytest.raises(ValidationError) as exc_info:
            service.complete_pm_task(
                admin, schedule.id, service._today() + timedelta(days=1)
            )
        assert exc_info.value.field == "completed_on"

    def test_list_ordered_by_due_date(self, service, admin, equipment):
        dues = [("B", "2030-05-01"), ("A", "2030-01-01"), ("C", "2029-12-31")]
        for task, due in dues:
            service.create_pm_schedule(
                admin,
                {
                    "equipment_id": "EQ-1",
                    "task_name": task,
                    "frequency": "Annually",
                    "next_due": due,
                },
            )

        listed = service.list_pm_schedules(admin, equipment_ref="EQ-1")
        assert [s.task_name for s in listed] == ["C", "A", "B"]

    def test_invalid_frequency(self, service, admin, equipment):
        with pytest.raises(ValidationError) as exc_info:
            service.create_pm_schedule(
                admin,
                {"equipment_id": "EQ-1", "task_name": "X", "frequency": "Hourly"},
            )
        assert exc_info.value.field == "frequency"
