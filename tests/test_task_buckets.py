from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from app.domain.state_machine import TaskStatus
from app.domain.task_buckets import (
    is_due_today,
    is_open_report,
    is_overdue,
    is_scheduled_on,
    is_upcoming,
    review_first_key,
)

TODAY = date(2025, 3, 10)


@dataclass
class _Task:
    status: TaskStatus = TaskStatus.ASSIGNED
    due_date: str | None = None
    scheduled_start_date: str | None = None
    scheduled_end_date: str | None = None
    field_completed: bool = False
    report_submitted: bool = False


def test_due_today_by_due_date_or_field_window() -> None:
    assert is_due_today(_Task(due_date="2025-03-10"), TODAY)
    assert is_due_today(_Task(scheduled_start_date="2025-03-10"), TODAY)
    assert is_due_today(_Task(scheduled_start_date="2025-03-08", scheduled_end_date="2025-03-12"), TODAY)
    assert is_due_today(_Task(scheduled_start_date="2025-03-08", scheduled_end_date="2025-03-10"), TODAY)
    assert not is_due_today(_Task(scheduled_start_date="2025-03-11", scheduled_end_date="2025-03-12"), TODAY)
    assert not is_due_today(_Task(due_date="2025-03-09"), TODAY)
    assert not is_due_today(_Task(), TODAY)


def test_upcoming_window_is_tomorrow_through_fourteen_days() -> None:
    assert is_upcoming(_Task(due_date="2025-03-11"), TODAY)
    assert is_upcoming(_Task(due_date="2025-03-24"), TODAY)
    assert not is_upcoming(_Task(due_date="2025-03-25"), TODAY)
    assert not is_upcoming(_Task(due_date="2025-03-10"), TODAY)
    assert is_upcoming(_Task(scheduled_start_date="2025-03-01", scheduled_end_date="2025-03-11"), TODAY)
    assert not is_upcoming(_Task(scheduled_start_date="2025-03-01", scheduled_end_date="2025-03-10"), TODAY)


def test_upcoming_excludes_approved() -> None:
    assert not is_upcoming(_Task(status=TaskStatus.APPROVED, due_date="2025-03-12"), TODAY)


def test_overdue_requires_past_due_date_and_open_task() -> None:
    assert is_overdue(_Task(due_date="2025-03-09"), TODAY)
    assert not is_overdue(_Task(due_date="2025-03-10"), TODAY)
    assert not is_overdue(_Task(status=TaskStatus.APPROVED, due_date="2025-01-01"), TODAY)
    assert not is_overdue(_Task(), TODAY)


def test_scheduled_on_ignores_due_date() -> None:
    tomorrow = date(2025, 3, 11)
    assert is_scheduled_on(_Task(scheduled_start_date="2025-03-11"), tomorrow)
    assert is_scheduled_on(_Task(scheduled_start_date="2025-03-10", scheduled_end_date="2025-03-13"), tomorrow)
    assert not is_scheduled_on(_Task(due_date="2025-03-11"), tomorrow)


def test_open_report() -> None:
    assert is_open_report(_Task(field_completed=True))
    assert not is_open_report(_Task(field_completed=True, report_submitted=True))
    assert not is_open_report(_Task(field_completed=True, status=TaskStatus.APPROVED))
    assert not is_open_report(_Task())


def test_review_first_ordering() -> None:
    rows = [
        _Task(due_date="2025-03-01"),
        _Task(status=TaskStatus.READY_FOR_REVIEW, due_date="2025-03-20"),
        _Task(),
        _Task(scheduled_start_date="2025-02-01"),
    ]
    ordered = sorted(rows, key=review_first_key)
    assert ordered[0].status == TaskStatus.READY_FOR_REVIEW
    assert ordered[1].scheduled_start_date == "2025-02-01"
    assert ordered[2].due_date == "2025-03-01"
    assert ordered[3].due_date is None and ordered[3].scheduled_start_date is None
