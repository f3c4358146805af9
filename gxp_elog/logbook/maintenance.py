"""
Preventive maintenance scheduling rules.

Due dates advance by calendar periods (a monthly task completed on
31 January is next due on 28/29 February). The display status of a
schedule is derived at read time and never persisted.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional, Union

import pytz
from dateutil.relativedelta import relativedelta

from ..audit_trail.snapshots import PMScheduleSnapshot
from .entities import PMFrequency, PMScheduleDB, PMStatus

FREQUENCY_PERIODS = {
    PMFrequency.DAILY: relativedelta(days=1),
    PMFrequency.WEEKLY: relativedelta(weeks=1),
    PMFrequency.MONTHLY: relativedelta(months=1),
    PMFrequency.QUARTERLY: relativedelta(months=3),
    PMFrequency.SEMI_ANNUALLY: relativedelta(months=6),
    PMFrequency.ANNUALLY: relativedelta(years=1),
}


class PMDisplayStatus(str, Enum):
    """Status shown to users, computed against today's date."""

    OVERDUE = "Overdue"
    DUE_TODAY = "Due Today"
    UPCOMING = "Upcoming"
    COMPLETED = "Completed"


def today_in_timezone(timezone_name: str, now: Optional[datetime] = None) -> date:
    """
    Current date at the site.

    Args:
        timezone_name: IANA timezone name
        now: Aware datetime to convert instead of the current time
    """
    tz = pytz.timezone(timezone_name)
    if now is None:
        return datetime.now(tz).date()
    if now.tzinfo is None:
        now = pytz.utc.localize(now)
    return now.astimezone(tz).date()


def next_due_after(completed_on: date, frequency: Union[PMFrequency, str]) -> date:
    """Date one frequency period after ``completed_on``."""
    return completed_on + FREQUENCY_PERIODS[PMFrequency(frequency)]


def display_status(
    status: Union[PMStatus, str], next_due: date, today: date
) -> PMDisplayStatus:
    """
    Derive the display status of a schedule.

    A schedule completed for the current cycle shows as Completed until its
    next due date arrives.
    """
    if PMStatus(status) == PMStatus.COMPLETED and next_due > today:
        return PMDisplayStatus.COMPLETED
    if next_due < today:
        return PMDisplayStatus.OVERDUE
    if next_due == today:
        return PMDisplayStatus.DUE_TODAY
    return PMDisplayStatus.UPCOMING


class PMScheduleView(PMScheduleSnapshot):
    """A PM schedule as listed, with its derived display status."""

    display_status: PMDisplayStatus

    @classmethod
    def build(cls, schedule: PMScheduleDB, today: date) -> "PMScheduleView":
        snapshot = PMScheduleSnapshot.from_entity(schedule)
        return cls(
            **snapshot.model_dump(),
            display_status=display_status(schedule.status, schedule.next_due, today),
        )
