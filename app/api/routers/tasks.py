from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status

from app.api.deps import get_current_actor, require_role
from app.api.errors import handle_workflow_error
from app.domain.models import (
    Actor,
    TaskCreate,
    TaskFieldsUpdate,
    TaskHistoryRead,
    TaskOutcomeRead,
    TaskRead,
    TaskReassignRequest,
    TaskRejectRequest,
    TaskStatusRequest,
)
from app.domain.state_machine import Role, TaskStatus
from app.infra.audit import set_audit_context
from app.services.errors import WorkflowError
from app.services.task_lifecycle_service import TaskLifecycleService, TaskOutcome

router = APIRouter()


def get_task_service() -> TaskLifecycleService:
    return TaskLifecycleService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_role(Role.ADMIN))]
Service = Annotated[TaskLifecycleService, Depends(get_task_service)]


def _outcome_read(outcome: TaskOutcome) -> TaskOutcomeRead:
    return TaskOutcomeRead(task=TaskRead.model_validate(outcome.task), warnings=outcome.warnings)


@router.post("", response_model=TaskOutcomeRead, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreate, request: Request, actor: AdminActor, service: Service) -> TaskOutcomeRead:
    try:
        outcome = service.create_task(actor, payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    set_audit_context(request, action="task.create", resource=f"task:{outcome.task.id}")
    return _outcome_read(outcome)


@router.get("", response_model=list[TaskRead])
def list_tasks(
    actor: CurrentActor,
    service: Service,
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
) -> list[TaskRead]:
    return [TaskRead.model_validate(item) for item in service.list_tasks(actor, status=status_filter)]


@router.get("/{task_id}", response_model=TaskRead)
def get_task(task_id: str, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        task = service.get_task(actor, task_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return TaskRead.model_validate(task)


@router.patch("/{task_id}", response_model=TaskOutcomeRead)
def update_task(
    task_id: str,
    payload: TaskFieldsUpdate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskOutcomeRead:
    set_audit_context(
        request,
        action="task.update",
        resource=f"task:{task_id}",
        detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
    )
    try:
        outcome = service.update_fields(actor, task_id, payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return _outcome_read(outcome)


@router.put("/{task_id}/status", response_model=TaskOutcomeRead)
def set_task_status(
    task_id: str,
    payload: TaskStatusRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskOutcomeRead:
    set_audit_context(
        request,
        action="task.status",
        resource=f"task:{task_id}",
        detail={"what": {"target_status": payload.status}},
    )
    try:
        outcome = service.set_status(actor, task_id, payload.status)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return _outcome_read(outcome)


@router.post("/{task_id}/approve", response_model=TaskOutcomeRead)
def approve_task(task_id: str, request: Request, actor: AdminActor, service: Service) -> TaskOutcomeRead:
    set_audit_context(request, action="task.approve", resource=f"task:{task_id}")
    try:
        outcome = service.approve(actor, task_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return _outcome_read(outcome)


@router.post("/{task_id}/reject", response_model=TaskOutcomeRead)
def reject_task(
    task_id: str,
    payload: TaskRejectRequest,
    request: Request,
    actor: AdminActor,
    service: Service,
) -> TaskOutcomeRead:
    set_audit_context(request, action="task.reject", resource=f"task:{task_id}")
    try:
        outcome = service.reject(actor, task_id, payload.rejection_remarks, payload.resubmission_due_date)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return _outcome_read(outcome)


@router.post("/{task_id}/reassign", response_model=TaskOutcomeRead)
def reassign_task(
    task_id: str,
    payload: TaskReassignRequest,
    request: Request,
    actor: AdminActor,
    service: Service,
) -> TaskOutcomeRead:
    set_audit_context(
        request,
        action="task.reassign",
        resource=f"task:{task_id}",
        detail={"what": {"assigned_technician_id": payload.assigned_technician_id}},
    )
    try:
        outcome = service.reassign(actor, task_id, payload.assigned_technician_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return _outcome_read(outcome)


@router.post("/{task_id}/mark-field-complete", response_model=TaskOutcomeRead)
def mark_field_complete(task_id: str, request: Request, actor: CurrentActor, service: Service) -> TaskOutcomeRead:
    set_audit_context(request, action="task.field_complete", resource=f"task:{task_id}")
    try:
        outcome = service.mark_field_complete(actor, task_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return _outcome_read(outcome)


@router.get("/{task_id}/history", response_model=list[TaskHistoryRead])
def get_task_history(task_id: str, actor: CurrentActor, service: Service) -> list[TaskHistoryRead]:
    try:
        rows = service.get_task_history(actor, task_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return [TaskHistoryRead.model_validate(item) for item in rows]
