"""Date-bucketing predicates for the task dashboards.

All dates are ``YYYY-MM-DD`` strings; lexical comparison is calendar
comparison for that format, which is how the stored values are compared.
Every window boundary is inclusive.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Protocol

from app.domain.state_machine import TaskStatus

UPCOMING_WINDOW_DAYS = 14


class DatedTask(Protocol):
    status: TaskStatus
    due_date: str | None
    scheduled_start_date: str | None
    scheduled_end_date: str | None


class ReportTask(Protocol):
    status: TaskStatus
    field_completed: bool
    report_submitted: bool


def iso_day(value: date) -> str:
    return value.isoformat()


def _field_window_covers(task: DatedTask, start: str, end: str) -> bool:
    field_start = task.scheduled_start_date
    if not field_start:
        return False
    field_end = task.scheduled_end_date
    if not field_end:
        return start <= field_start <= end
    return field_end >= start and field_start <= end


def is_due_today(task: DatedTask, today: date) -> bool:
    day = iso_day(today)
    if task.due_date and task.due_date == day:
        return True
    return _field_window_covers(task, day, day)


def is_upcoming(task: DatedTask, today: date, window_days: int = UPCOMING_WINDOW_DAYS) -> bool:
    if task.status == TaskStatus.APPROVED:
        return False
    start = iso_day(today + timedelta(days=1))
    end = iso_day(today + timedelta(days=window_days))
    if task.due_date and start <= task.due_date <= end:
        return True
    return _field_window_covers(task, start, end)


def is_overdue(task: DatedTask, today: date) -> bool:
    if task.status == TaskStatus.APPROVED or not task.due_date:
        return False
    return task.due_date < iso_day(today)


def is_scheduled_on(task: DatedTask, day: date) -> bool:
    value = iso_day(day)
    return _field_window_covers(task, value, value)


def is_open_report(task: ReportTask) -> bool:
    return task.field_completed and not task.report_submitted and task.status != TaskStatus.APPROVED


def review_first_key(task: DatedTask) -> tuple[int, str, str]:
    return (
        0 if task.status == TaskStatus.READY_FOR_REVIEW else 1,
        task.due_date or task.scheduled_start_date or "9999-12-31",
        task.scheduled_end_date or "9999-12-31",
    )
