from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.models import (
    TASK_TYPE_LABELS,
    Actor,
    HistoryAction,
    NotificationType,
    Project,
    Task,
    TaskCreate,
    TaskFieldsUpdate,
    TaskHistory,
    TaskType,
    User,
    now_utc,
)
from app.domain.state_machine import (
    Role,
    TaskStatus,
    can_transition,
    is_terminal,
    technician_may_request,
)
from app.infra.db import get_engine
from app.infra.events import EventBus, event_bus
from app.services.errors import AuthorizationError, NotFoundError, StorageError, ValidationError
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

TECHNICIAN_EDITABLE_FIELDS = frozenset({"location_notes", "engagement_notes"})


@dataclass
class TaskOutcome:
    task: Task
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Notice:
    user_ids: tuple[str, ...]
    message: str
    type: NotificationType = NotificationType.INFO


def task_label(task_type: TaskType | str) -> str:
    try:
        return TASK_TYPE_LABELS[TaskType(task_type)]
    except ValueError:
        return str(task_type)


def normalize_date(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        parsed = date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be in YYYY-MM-DD format") from exc
    if parsed.isoformat() != value:
        raise ValidationError(f"{field_name} must be in YYYY-MM-DD format")
    return value


class TaskLifecycleService:
    """Task state machine, history trail and counterpart notifications.

    History rows commit with the task change. Notifications and domain
    events go out after the commit; a failure there is logged and handed
    back as a warning instead of undoing the change.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        notifications: NotificationService | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._engine = engine
        self._notifications = notifications if notifications is not None else NotificationService(engine)
        self._events = events if events is not None else event_bus

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise AuthorizationError("admin role required")

    @staticmethod
    def _ensure_owner(actor: Actor, task: Task) -> None:
        if not actor.is_admin and task.assigned_technician_id != actor.user_id:
            raise AuthorizationError("task is not assigned to this technician")

    def _get_scoped_task(self, session: Session, tenant_id: str, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.tenant_id == tenant_id).where(Task.id == task_id)).first()
        if row is None:
            raise NotFoundError("task not found")
        return row

    def _get_scoped_project(self, session: Session, tenant_id: str, project_id: str) -> Project:
        row = session.exec(
            select(Project).where(Project.tenant_id == tenant_id).where(Project.id == project_id)
        ).first()
        if row is None:
            raise NotFoundError("project not found")
        return row

    def _get_technician(self, session: Session, tenant_id: str, user_id: str) -> User:
        row = session.exec(
            select(User)
            .where(User.tenant_id == tenant_id)
            .where(User.id == user_id)
            .where(User.role == Role.TECHNICIAN)
        ).first()
        if row is None:
            raise NotFoundError("technician not found")
        return row

    def _technician_name(self, session: Session, tenant_id: str, user_id: str | None) -> str:
        if user_id is None:
            return "Unassigned"
        row = session.exec(select(User).where(User.tenant_id == tenant_id).where(User.id == user_id)).first()
        return row.display_name if row is not None else "Unassigned"

    def _tenant_admin_ids(self, session: Session, tenant_id: str) -> tuple[str, ...]:
        statement = (
            select(User.id)
            .where(User.tenant_id == tenant_id)
            .where(User.role == Role.ADMIN)
            .where(col(User.is_active).is_(True))
        )
        return tuple(session.exec(statement).all())

    def _next_proctor_no(self, session: Session, project_id: str) -> int:
        statement = (
            select(func.max(Task.proctor_no))
            .where(Task.project_id == project_id)
            .where(Task.task_type == TaskType.PROCTOR)
        )
        current = session.exec(statement).one()
        return int(current or 0) + 1

    def _record_history(
        self,
        session: Session,
        *,
        task: Task,
        actor: Actor,
        action: HistoryAction,
        note: str | None = None,
    ) -> None:
        session.add(
            TaskHistory(
                tenant_id=task.tenant_id,
                task_id=task.id,
                actor_role=actor.role,
                actor_name=actor.name,
                actor_user_id=actor.user_id,
                action_type=action,
                note=note,
            )
        )

    @staticmethod
    def _stamp_edit(task: Task, actor: Actor) -> None:
        now = now_utc()
        task.last_edited_by_user_id = actor.user_id
        task.last_edited_by_role = actor.role
        task.last_edited_at = now
        task.updated_at = now

    def _commit(self, session: Session, task: Task) -> None:
        session.add(task)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("task %s update failed: %s", task.id, exc)
            raise StorageError("task update failed") from exc
        session.refresh(task)

    def _after_commit(
        self,
        task: Task,
        actor: Actor,
        event_type: str,
        notices: list[_Notice],
        payload: dict[str, Any] | None = None,
    ) -> TaskOutcome:
        outcome = TaskOutcome(task=task)
        for notice in notices:
            if not notice.user_ids:
                continue
            try:
                self._notifications.notify(
                    tenant_id=task.tenant_id,
                    user_ids=notice.user_ids,
                    message=notice.message,
                    type=notice.type,
                    related_task_id=task.id,
                    related_project_id=task.project_id,
                )
            except Exception as exc:
                logger.exception("notification for task %s was not delivered", task.id)
                outcome.warnings.append(f"notification not delivered: {exc}")
        try:
            self._events.publish_dict(
                event_type,
                task.tenant_id,
                {"task_id": task.id, "project_id": task.project_id, "status": task.status, **(payload or {})},
                actor_id=actor.user_id,
            )
        except Exception as exc:
            logger.exception("event %s for task %s was not published", event_type, task.id)
            outcome.warnings.append(f"event not published: {exc}")
        return outcome

    def create_task(self, actor: Actor, payload: TaskCreate) -> TaskOutcome:
        self._require_admin(actor)
        due_date = normalize_date(payload.due_date, "due_date")
        start_date = normalize_date(payload.scheduled_start_date, "scheduled_start_date")
        end_date = normalize_date(payload.scheduled_end_date, "scheduled_end_date")
        notices: list[_Notice] = []
        with self._session() as session:
            project = self._get_scoped_project(session, actor.tenant_id, payload.project_id)
            technician_id = payload.assigned_technician_id or None
            if technician_id is not None:
                self._get_technician(session, actor.tenant_id, technician_id)
            task = Task(
                tenant_id=actor.tenant_id,
                project_id=project.id,
                task_type=payload.task_type,
                status=TaskStatus.ASSIGNED,
                assigned_technician_id=technician_id,
                due_date=due_date,
                scheduled_start_date=start_date,
                scheduled_end_date=end_date,
                location_name=payload.location_name,
                location_notes=payload.location_notes,
                engagement_notes=payload.engagement_notes,
            )
            if payload.task_type == TaskType.PROCTOR:
                task.proctor_no = self._next_proctor_no(session, project.id)
            self._commit(session, task)
            if technician_id is not None:
                notices.append(
                    _Notice(
                        (technician_id,),
                        f"Admin assigned {task_label(task.task_type)} for Project {project.project_number}",
                    )
                )
        return self._after_commit(task, actor, "task.created", notices)

    def set_status(self, actor: Actor, task_id: str, target: TaskStatus) -> TaskOutcome:
        notices: list[_Notice] = []
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            self._ensure_owner(actor, task)
            if not actor.is_admin and not technician_may_request(target):
                raise AuthorizationError("technicians can only set status to IN_PROGRESS_TECH or READY_FOR_REVIEW")
            if is_terminal(task.status):
                raise ValidationError(f"task is {task.status} and cannot change status")
            if not can_transition(task.status, target, actor.role):
                raise ValidationError(f"illegal transition: {task.status} -> {target}")

            source = task.status
            task.status = target
            self._stamp_edit(task, actor)
            technician_submit = target == TaskStatus.READY_FOR_REVIEW and actor.role == Role.TECHNICIAN
            if target == TaskStatus.READY_FOR_REVIEW:
                task.report_submitted = True
            if technician_submit:
                task.submitted_at = task.last_edited_at
                self._record_history(session, task=task, actor=actor, action=HistoryAction.SUBMITTED)
            self._commit(session, task)

            if technician_submit:
                project = session.get(Project, task.project_id)
                project_number = project.project_number if project is not None else ""
                notices.append(
                    _Notice(
                        self._tenant_admin_ids(session, actor.tenant_id),
                        f"{actor.name} completed {task_label(task.task_type)} for Project {project_number}",
                    )
                )
        logger.info("task %s moved %s -> %s by %s", task.id, source, target, actor.role)
        return self._after_commit(task, actor, "task.status_changed", notices, {"from_status": source})

    def approve(self, actor: Actor, task_id: str) -> TaskOutcome:
        self._require_admin(actor)
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            if is_terminal(task.status):
                raise ValidationError("task is already approved")
            task.status = TaskStatus.APPROVED
            self._stamp_edit(task, actor)
            task.completed_at = task.last_edited_at
            self._record_history(session, task=task, actor=actor, action=HistoryAction.APPROVED)
            self._commit(session, task)
        return self._after_commit(task, actor, "task.approved", [])

    def reject(
        self,
        actor: Actor,
        task_id: str,
        remarks: str | None,
        resubmission_due_date: str | None,
    ) -> TaskOutcome:
        self._require_admin(actor)
        remarks = (remarks or "").strip()
        if not remarks:
            raise ValidationError("rejection remarks are required")
        due_date = normalize_date(resubmission_due_date, "resubmission_due_date")
        if due_date is None:
            raise ValidationError("resubmission due date is required")
        notices: list[_Notice] = []
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            if is_terminal(task.status):
                raise ValidationError("approved tasks cannot be rejected")
            task.status = TaskStatus.REJECTED_NEEDS_FIX
            task.rejection_remarks = remarks
            task.resubmission_due_date = due_date
            self._stamp_edit(task, actor)
            self._record_history(session, task=task, actor=actor, action=HistoryAction.REJECTED, note=remarks)
            self._commit(session, task)
            if task.assigned_technician_id is not None:
                project = session.get(Project, task.project_id)
                project_number = project.project_number if project is not None else ""
                notices.append(
                    _Notice(
                        (task.assigned_technician_id,),
                        f"Your task for Project {project_number} has been rejected. "
                        "Please review the remarks and resubmit.",
                        NotificationType.WARNING,
                    )
                )
        return self._after_commit(task, actor, "task.rejected", notices)

    def reassign(self, actor: Actor, task_id: str, technician_id: str) -> TaskOutcome:
        self._require_admin(actor)
        notices: list[_Notice] = []
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            technician = self._get_technician(session, actor.tenant_id, technician_id)
            if task.assigned_technician_id == technician.id:
                return TaskOutcome(task=task)
            old_name = self._technician_name(session, actor.tenant_id, task.assigned_technician_id)
            task.assigned_technician_id = technician.id
            self._stamp_edit(task, actor)
            self._record_history(
                session,
                task=task,
                actor=actor,
                action=HistoryAction.REASSIGNED,
                note=f"Task reassigned from {old_name} to {technician.display_name}",
            )
            self._commit(session, task)
            project = session.get(Project, task.project_id)
            project_number = project.project_number if project is not None else ""
            notices.append(
                _Notice(
                    (technician.id,),
                    f"Admin reassigned {task_label(task.task_type)} for Project {project_number}",
                )
            )
        return self._after_commit(task, actor, "task.reassigned", notices, {"assigned_technician_id": technician.id})

    def mark_field_complete(self, actor: Actor, task_id: str) -> TaskOutcome:
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            self._ensure_owner(actor, task)
            task.field_completed = True
            task.field_completed_at = now_utc()
            task.updated_at = task.field_completed_at
            self._record_history(
                session,
                task=task,
                actor=actor,
                action=HistoryAction.STATUS_CHANGED,
                note="Field work marked as complete",
            )
            self._commit(session, task)
        return self._after_commit(task, actor, "task.field_completed", [])

    def update_fields(self, actor: Actor, task_id: str, payload: TaskFieldsUpdate) -> TaskOutcome:
        updates = payload.model_dump(exclude_unset=True)
        for key in ("due_date", "scheduled_start_date", "scheduled_end_date"):
            if key in updates:
                updates[key] = normalize_date(updates[key], key)
        notices: list[_Notice] = []
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            self._ensure_owner(actor, task)
            changed = {key: value for key, value in updates.items() if getattr(task, key) != value}
            if "assigned_technician_id" in changed and not changed["assigned_technician_id"]:
                changed["assigned_technician_id"] = None
                if task.assigned_technician_id is None:
                    changed.pop("assigned_technician_id")
            if not actor.is_admin:
                if "assigned_technician_id" in changed:
                    raise AuthorizationError("technicians cannot change task assignment")
                if set(changed) - TECHNICIAN_EDITABLE_FIELDS:
                    raise AuthorizationError("technicians can only edit task notes")
            if not changed:
                raise ValidationError("no fields to update")

            notes: list[str] = []
            new_technician: User | None = None
            assignment_note = ""
            if "assigned_technician_id" in changed:
                old_name = self._technician_name(session, actor.tenant_id, task.assigned_technician_id)
                if changed["assigned_technician_id"] is None:
                    notes.append(f"unassigned (was: {old_name})")
                else:
                    new_technician = self._get_technician(session, actor.tenant_id, changed["assigned_technician_id"])
                    assignment_note = f"reassigned from {old_name} to {new_technician.display_name}"
                task.assigned_technician_id = changed["assigned_technician_id"]
            if "due_date" in changed:
                notes.append(f"due date changed from {task.due_date or 'None'} to {changed['due_date'] or 'None'}")
                task.due_date = changed["due_date"]
            if "scheduled_start_date" in changed:
                notes.append(
                    f"field start date changed from {task.scheduled_start_date or 'None'} "
                    f"to {changed['scheduled_start_date'] or 'None'}"
                )
                task.scheduled_start_date = changed["scheduled_start_date"]
            if "scheduled_end_date" in changed:
                old_end = task.scheduled_end_date
                new_end = changed["scheduled_end_date"]
                if old_end is None:
                    notes.append(f"field date changed to range ending {new_end}")
                elif new_end is None:
                    notes.append("field date changed from range to single date")
                else:
                    notes.append(f"field end date changed from {old_end} to {new_end}")
                task.scheduled_end_date = new_end
            if "location_name" in changed:
                notes.append("location name updated")
                task.location_name = changed["location_name"]
            if "location_notes" in changed:
                notes.append("location notes updated")
                task.location_notes = changed["location_notes"]
            if "engagement_notes" in changed:
                notes.append("engagement notes updated")
                task.engagement_notes = changed["engagement_notes"]
            if "task_type" in changed:
                new_type = changed["task_type"]
                if new_type is None:
                    raise ValidationError("task type cannot be cleared")
                notes.append(f"task type changed from {task.task_type} to {new_type}")
                if new_type == TaskType.PROCTOR:
                    task.proctor_no = self._next_proctor_no(session, task.project_id)
                else:
                    task.proctor_no = None
                task.task_type = new_type
            if assignment_note:
                notes.append(assignment_note)

            self._stamp_edit(task, actor)
            self._record_history(
                session,
                task=task,
                actor=actor,
                action=HistoryAction.STATUS_CHANGED,
                note="; ".join(notes),
            )
            self._commit(session, task)
            if new_technician is not None:
                project = session.get(Project, task.project_id)
                project_number = project.project_number if project is not None else ""
                notices.append(
                    _Notice(
                        (new_technician.id,),
                        f"Admin assigned {task_label(task.task_type)} for Project {project_number}",
                    )
                )
        return self._after_commit(task, actor, "task.updated", notices, {"changed": sorted(changed)})

    def get_task(self, actor: Actor, task_id: str) -> Task:
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            self._ensure_owner(actor, task)
            return task

    def list_tasks(self, actor: Actor, *, status: TaskStatus | None = None) -> list[Task]:
        with self._session() as session:
            statement = select(Task).where(Task.tenant_id == actor.tenant_id)
            if not actor.is_admin:
                statement = statement.where(Task.assigned_technician_id == actor.user_id)
            if status is not None:
                statement = statement.where(Task.status == status)
            statement = statement.order_by(col(Task.created_at).desc())
            return list(session.exec(statement).all())

    def list_project_tasks(self, actor: Actor, project_id: str) -> list[Task]:
        with self._session() as session:
            self._get_scoped_project(session, actor.tenant_id, project_id)
            statement = select(Task).where(Task.tenant_id == actor.tenant_id).where(Task.project_id == project_id)
            if not actor.is_admin:
                statement = statement.where(Task.assigned_technician_id == actor.user_id)
            statement = statement.order_by(col(Task.task_type).asc(), col(Task.created_at).asc())
            return list(session.exec(statement).all())

    def get_task_history(self, actor: Actor, task_id: str) -> list[TaskHistory]:
        with self._session() as session:
            task = self._get_scoped_task(session, actor.tenant_id, task_id)
            self._ensure_owner(actor, task)
            statement = (
                select(TaskHistory)
                .where(TaskHistory.tenant_id == actor.tenant_id)
                .where(TaskHistory.task_id == task_id)
                .order_by(col(TaskHistory.timestamp).desc(), col(TaskHistory.id).desc())
            )
            return list(session.exec(statement).all())
