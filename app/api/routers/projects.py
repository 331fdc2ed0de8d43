from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from app.api.deps import get_current_actor, require_role
from app.api.errors import handle_workflow_error
from app.domain.models import Actor, ProjectCreate, ProjectRead, ProjectUpdate, TaskRead
from app.domain.state_machine import Role
from app.infra.audit import set_audit_context
from app.services.errors import WorkflowError
from app.services.project_service import ProjectService
from app.services.task_lifecycle_service import TaskLifecycleService

router = APIRouter()


def get_project_service() -> ProjectService:
    return ProjectService()


def get_task_service() -> TaskLifecycleService:
    return TaskLifecycleService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_role(Role.ADMIN))]
Service = Annotated[ProjectService, Depends(get_project_service)]
TaskService = Annotated[TaskLifecycleService, Depends(get_task_service)]


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(payload: ProjectCreate, request: Request, actor: AdminActor, service: Service) -> ProjectRead:
    try:
        project = service.create_project(actor, payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    set_audit_context(
        request,
        action="project.create",
        resource=f"project:{project.id}",
        detail={"what": {"project_number": project.project_number}},
    )
    return ProjectRead.model_validate(project)


@router.get("", response_model=list[ProjectRead])
def list_projects(actor: CurrentActor, service: Service) -> list[ProjectRead]:
    return [ProjectRead.model_validate(item) for item in service.list_projects(actor)]


@router.get("/{project_id}", response_model=ProjectRead)
def get_project(project_id: str, actor: CurrentActor, service: Service) -> ProjectRead:
    try:
        project = service.get_project(actor, project_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return ProjectRead.model_validate(project)


@router.patch("/{project_id}", response_model=ProjectRead)
def update_project(
    project_id: str,
    payload: ProjectUpdate,
    request: Request,
    actor: AdminActor,
    service: Service,
) -> ProjectRead:
    set_audit_context(request, action="project.update", resource=f"project:{project_id}")
    try:
        project = service.update_project(actor, project_id, payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return ProjectRead.model_validate(project)


@router.get("/{project_id}/tasks", response_model=list[TaskRead])
def list_project_tasks(project_id: str, actor: CurrentActor, service: TaskService) -> list[TaskRead]:
    try:
        rows = service.list_project_tasks(actor, project_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return [TaskRead.model_validate(item) for item in rows]
