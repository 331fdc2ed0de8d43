from __future__ import annotations

import logging
import os

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.models import Actor, Project, ProjectCreate, ProjectUpdate, Task, now_utc
from app.infra.db import get_engine, is_unique_violation
from app.infra.events import EventBus, event_bus
from app.services.errors import AuthorizationError, ConflictError, NotFoundError, StorageError, ValidationError
from app.services.project_numbering import ProjectNumberAllocator

logger = logging.getLogger(__name__)

PROJECT_INSERT_MAX_ATTEMPTS = int(os.getenv("PROJECT_INSERT_MAX_ATTEMPTS", "5"))


def bump_project_number(project_number: str) -> str:
    head, _, suffix = project_number.rpartition("-")
    if not head or not suffix.isdigit():
        raise ValueError(f"unexpected project number format: {project_number}")
    return f"{head}-{int(suffix) + 1:04d}"


def _is_number_conflict(exc: IntegrityError) -> bool:
    return is_unique_violation(exc, "project_number") or is_unique_violation(exc, "uq_projects_tenant_number")


def _is_name_conflict(exc: IntegrityError) -> bool:
    return is_unique_violation(exc, "project_name") or is_unique_violation(exc, "uq_projects_tenant_name")


class ProjectService:
    def __init__(
        self,
        engine: Engine | None = None,
        *,
        allocator: ProjectNumberAllocator | None = None,
        events: EventBus | None = None,
        max_insert_attempts: int = PROJECT_INSERT_MAX_ATTEMPTS,
    ) -> None:
        self._engine = engine
        self._allocator = allocator if allocator is not None else ProjectNumberAllocator(engine)
        self._events = events if events is not None else event_bus
        self._max_insert_attempts = max(1, max_insert_attempts)

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    @staticmethod
    def _require_admin(actor: Actor) -> None:
        if not actor.is_admin:
            raise AuthorizationError("admin role required")

    @staticmethod
    def _clean_name(raw: str | None) -> str:
        name = (raw or "").strip()
        if not name:
            raise ValidationError("project name is required")
        return name

    def _ensure_name_free(self, session: Session, tenant_id: str, name: str, exclude_id: str | None = None) -> None:
        statement = select(Project).where(Project.tenant_id == tenant_id).where(Project.project_name == name)
        if exclude_id is not None:
            statement = statement.where(Project.id != exclude_id)
        if session.exec(statement).first() is not None:
            raise ValidationError("project name already exists")

    def _get_scoped_project(self, session: Session, tenant_id: str, project_id: str) -> Project:
        row = session.exec(
            select(Project).where(Project.tenant_id == tenant_id).where(Project.id == project_id)
        ).first()
        if row is None:
            raise NotFoundError("project not found")
        return row

    def _technician_has_task(self, session: Session, actor: Actor, project_id: str) -> bool:
        statement = (
            select(Task.id)
            .where(Task.tenant_id == actor.tenant_id)
            .where(Task.project_id == project_id)
            .where(Task.assigned_technician_id == actor.user_id)
        )
        return session.exec(statement).first() is not None

    def create_project(self, actor: Actor, payload: ProjectCreate) -> Project:
        self._require_admin(actor)
        name = self._clean_name(payload.project_name)
        with self._session() as session:
            self._ensure_name_free(session, actor.tenant_id, name)

        number = self._allocator.allocate_project_number(actor.tenant_id).formatted_number
        with self._session() as session:
            for attempt in range(1, self._max_insert_attempts + 1):
                row = Project(
                    tenant_id=actor.tenant_id,
                    project_number=number,
                    project_name=name,
                    customer_emails=payload.customer_emails or [],
                    soil_specs=payload.soil_specs or {},
                    concrete_specs=payload.concrete_specs or {},
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    if _is_name_conflict(exc):
                        raise ValidationError("project name already exists") from exc
                    if not _is_number_conflict(exc):
                        raise StorageError("project insert failed") from exc
                    logger.warning(
                        "project number %s taken on insert (attempt %d/%d)",
                        number,
                        attempt,
                        self._max_insert_attempts,
                    )
                    number = bump_project_number(number)
                    continue
                except SQLAlchemyError as exc:
                    session.rollback()
                    raise StorageError("project insert failed") from exc
                session.refresh(row)
                break
            else:
                raise ConflictError("could not assign a unique project number")

        try:
            self._events.publish_dict(
                "project.created",
                actor.tenant_id,
                {"project_id": row.id, "project_number": row.project_number},
                actor_id=actor.user_id,
            )
        except Exception:
            logger.exception("failed to publish project.created for %s", row.id)
        return row

    def list_projects(self, actor: Actor) -> list[Project]:
        with self._session() as session:
            statement = select(Project).where(Project.tenant_id == actor.tenant_id)
            if not actor.is_admin:
                assigned = (
                    select(Task.project_id)
                    .where(Task.tenant_id == actor.tenant_id)
                    .where(Task.assigned_technician_id == actor.user_id)
                )
                statement = statement.where(col(Project.id).in_(assigned))
            statement = statement.order_by(col(Project.created_at).desc())
            return list(session.exec(statement).all())

    def get_project(self, actor: Actor, project_id: str) -> Project:
        with self._session() as session:
            row = self._get_scoped_project(session, actor.tenant_id, project_id)
            if not actor.is_admin and not self._technician_has_task(session, actor, project_id):
                raise AuthorizationError("project is not assigned to this technician")
            return row

    def update_project(self, actor: Actor, project_id: str, payload: ProjectUpdate) -> Project:
        self._require_admin(actor)
        with self._session() as session:
            row = self._get_scoped_project(session, actor.tenant_id, project_id)
            updates = payload.model_dump(exclude_unset=True)
            if "project_name" in updates:
                name = self._clean_name(updates["project_name"])
                self._ensure_name_free(session, actor.tenant_id, name, exclude_id=row.id)
                row.project_name = name
            if updates.get("customer_emails") is not None:
                row.customer_emails = updates["customer_emails"]
            if updates.get("soil_specs") is not None:
                row.soil_specs = updates["soil_specs"]
            if updates.get("concrete_specs") is not None:
                row.concrete_specs = updates["concrete_specs"]
            row.updated_at = now_utc()
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ValidationError("project name already exists") from exc
            session.refresh(row)
            return row
