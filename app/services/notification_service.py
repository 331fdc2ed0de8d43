from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.domain.models import Notification, NotificationRead, NotificationType, Project
from app.infra.db import get_engine
from app.services.errors import NotFoundError

logger = logging.getLogger(__name__)


class NotificationService:
    """User inbox plus the sink the task lifecycle writes into.

    ``notify`` runs in its own session so a failed notification never
    rolls back the task change that triggered it.
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    def notify(
        self,
        *,
        tenant_id: str,
        user_ids: Iterable[str],
        message: str,
        type: NotificationType = NotificationType.INFO,
        related_task_id: str | None = None,
        related_project_id: str | None = None,
    ) -> list[Notification]:
        rows = [
            Notification(
                tenant_id=tenant_id,
                user_id=user_id,
                message=message,
                type=type,
                related_task_id=related_task_id,
                related_project_id=related_project_id,
            )
            for user_id in user_ids
        ]
        if not rows:
            return []
        with self._session() as session:
            for row in rows:
                session.add(row)
            session.commit()
            for row in rows:
                session.refresh(row)
        logger.debug("queued %d notification(s) for task %s", len(rows), related_task_id)
        return rows

    def list_notifications(self, tenant_id: str, user_id: str, limit: int = 100) -> list[NotificationRead]:
        with self._session() as session:
            statement = (
                select(Notification, Project.project_number)
                .join(Project, col(Notification.related_project_id) == col(Project.id), isouter=True)
                .where(Notification.tenant_id == tenant_id)
                .where(Notification.user_id == user_id)
                .order_by(col(Notification.created_at).desc(), col(Notification.id).desc())
                .limit(limit)
            )
            rows = session.exec(statement).all()
        return [
            NotificationRead.model_validate(notification).model_copy(update={"project_number": project_number})
            for notification, project_number in rows
        ]

    def unread_count(self, tenant_id: str, user_id: str) -> int:
        with self._session() as session:
            statement = (
                select(func.count())
                .select_from(Notification)
                .where(Notification.tenant_id == tenant_id)
                .where(Notification.user_id == user_id)
                .where(col(Notification.is_read).is_(False))
            )
            return int(session.execute(statement).scalar_one())

    def mark_read(self, tenant_id: str, user_id: str, notification_id: int) -> Notification:
        with self._session() as session:
            notification = session.get(Notification, notification_id)
            if notification is None or notification.tenant_id != tenant_id or notification.user_id != user_id:
                raise NotFoundError("notification not found")
            if not notification.is_read:
                notification.is_read = True
                session.add(notification)
                session.commit()
                session.refresh(notification)
            return notification

    def mark_all_read(self, tenant_id: str, user_id: str) -> int:
        with self._session() as session:
            statement = (
                update(Notification)
                .where(col(Notification.tenant_id) == tenant_id)
                .where(col(Notification.user_id) == user_id)
                .where(col(Notification.is_read).is_(False))
                .values(is_read=True)
            )
            result = session.execute(statement)
            session.commit()
            return int(result.rowcount or 0)
