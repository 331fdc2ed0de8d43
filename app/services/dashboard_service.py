from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from datetime import date, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, or_, select

from app.domain.models import ActivityRead, Actor, DashboardStatsRead, Task, TaskHistory
from app.domain.state_machine import TaskStatus
from app.domain.task_buckets import (
    is_due_today,
    is_open_report,
    is_overdue,
    is_scheduled_on,
    is_upcoming,
    review_first_key,
)
from app.infra.db import get_engine


class DashboardService:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    def _visible_tasks(self, actor: Actor) -> list[Task]:
        with self._session() as session:
            statement = select(Task).where(Task.tenant_id == actor.tenant_id)
            if not actor.is_admin:
                statement = statement.where(Task.assigned_technician_id == actor.user_id)
            return list(session.exec(statement).all())

    def _bucket(self, actor: Actor, predicate: Callable[[Task], bool]) -> list[Task]:
        rows = [task for task in self._visible_tasks(actor) if predicate(task)]
        return sorted(rows, key=review_first_key)

    def today(self, actor: Actor, today: date | None = None) -> list[Task]:
        day = today or date.today()
        return self._bucket(actor, lambda task: is_due_today(task, day))

    def upcoming(self, actor: Actor, today: date | None = None) -> list[Task]:
        day = today or date.today()
        return self._bucket(actor, lambda task: is_upcoming(task, day))

    def overdue(self, actor: Actor, today: date | None = None) -> list[Task]:
        day = today or date.today()
        return self._bucket(actor, lambda task: is_overdue(task, day))

    def tomorrow(self, actor: Actor, today: date | None = None) -> list[Task]:
        day = (today or date.today()) + timedelta(days=1)
        return self._bucket(actor, lambda task: is_scheduled_on(task, day))

    def open_reports(self, actor: Actor) -> list[Task]:
        rows = [task for task in self._visible_tasks(actor) if is_open_report(task)]
        return sorted(rows, key=lambda task: (task.due_date is None, task.due_date or ""))

    def get_stats(self, actor: Actor, today: date | None = None) -> DashboardStatsRead:
        day = today or date.today()
        tasks = self._visible_tasks(actor)
        by_status = Counter(str(task.status) for task in tasks)
        return DashboardStatsRead(
            total=len(tasks),
            by_status={status.value: by_status.get(status.value, 0) for status in TaskStatus},
            overdue=len([task for task in tasks if is_overdue(task, day)]),
            open_reports=len([task for task in tasks if is_open_report(task)]),
        )

    def activity(self, actor: Actor, day: date | None = None) -> list[ActivityRead]:
        """Admins see approvals and submissions; technicians see history on their own tasks."""
        target = day or (date.today() - timedelta(days=1))
        if actor.is_admin:
            return self._admin_activity(actor, target)
        return self._technician_activity(actor, target)

    def _admin_activity(self, actor: Actor, target: date) -> list[ActivityRead]:
        with self._session() as session:
            statement = (
                select(Task)
                .where(Task.tenant_id == actor.tenant_id)
                .where(or_(col(Task.completed_at).is_not(None), col(Task.submitted_at).is_not(None)))
            )
            tasks = list(session.exec(statement).all())
        items: list[ActivityRead] = []
        for task in tasks:
            if task.completed_at is not None and task.completed_at.date() == target:
                items.append(
                    ActivityRead(task_id=task.id, project_id=task.project_id, kind="approved", at=task.completed_at)
                )
            if task.submitted_at is not None and task.submitted_at.date() == target:
                items.append(
                    ActivityRead(task_id=task.id, project_id=task.project_id, kind="submitted", at=task.submitted_at)
                )
        return sorted(items, key=lambda item: item.at, reverse=True)

    def _technician_activity(self, actor: Actor, target: date) -> list[ActivityRead]:
        with self._session() as session:
            statement = (
                select(TaskHistory, Task.project_id)
                .join(Task, col(TaskHistory.task_id) == col(Task.id))
                .where(Task.tenant_id == actor.tenant_id)
                .where(Task.assigned_technician_id == actor.user_id)
                .order_by(col(TaskHistory.timestamp).desc(), col(TaskHistory.id).desc())
            )
            rows = session.exec(statement).all()
        return [
            ActivityRead(
                task_id=entry.task_id,
                project_id=project_id,
                kind=str(entry.action_type),
                at=entry.timestamp,
                actor_name=entry.actor_name,
                note=entry.note,
            )
            for entry, project_id in rows
            if entry.timestamp.date() == target
        ]
