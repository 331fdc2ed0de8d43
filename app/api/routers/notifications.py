from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_actor
from app.api.errors import handle_workflow_error
from app.domain.models import Actor, MarkAllReadRead, NotificationRead, UnreadCountRead
from app.services.errors import WorkflowError
from app.services.notification_service import NotificationService

router = APIRouter()


def get_notification_service() -> NotificationService:
    return NotificationService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    actor: CurrentActor,
    service: Service,
    limit: int = Query(default=100, ge=1, le=500),
) -> list[NotificationRead]:
    return service.list_notifications(actor.tenant_id, actor.user_id, limit=limit)


@router.get("/unread-count", response_model=UnreadCountRead)
def unread_count(actor: CurrentActor, service: Service) -> UnreadCountRead:
    return UnreadCountRead(count=service.unread_count(actor.tenant_id, actor.user_id))


@router.put("/read-all", response_model=MarkAllReadRead)
def mark_all_read(actor: CurrentActor, service: Service) -> MarkAllReadRead:
    return MarkAllReadRead(updated=service.mark_all_read(actor.tenant_id, actor.user_id))


@router.put("/{notification_id}/read", response_model=NotificationRead)
def mark_read(notification_id: int, actor: CurrentActor, service: Service) -> NotificationRead:
    try:
        notification = service.mark_read(actor.tenant_id, actor.user_id, notification_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return NotificationRead.model_validate(notification)
