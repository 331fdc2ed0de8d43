from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_current_actor, require_role
from app.api.errors import handle_workflow_error
from app.domain.models import (
    Actor,
    BootstrapAdminRequest,
    DevLoginRequest,
    TenantActiveUpdate,
    TenantCreate,
    TenantRead,
    TenantUpdate,
    TokenResponse,
    UserActiveUpdate,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.domain.state_machine import Role
from app.infra.audit import set_audit_context
from app.infra.auth import create_access_token
from app.services.errors import WorkflowError
from app.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_role(Role.ADMIN))]
Service = Annotated[IdentityService, Depends(get_identity_service)]


def _ensure_own_tenant(actor: Actor, tenant_id: str) -> None:
    if actor.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="tenant not found")


@router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, service: Service) -> TenantRead:
    try:
        tenant = service.create_tenant(payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return TenantRead.model_validate(tenant)


@router.get("/tenants/{tenant_id}", response_model=TenantRead)
def get_tenant(tenant_id: str, actor: CurrentActor, service: Service) -> TenantRead:
    _ensure_own_tenant(actor, tenant_id)
    try:
        tenant = service.get_tenant(tenant_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return TenantRead.model_validate(tenant)


@router.patch("/tenants/{tenant_id}", response_model=TenantRead)
def update_tenant(
    tenant_id: str,
    payload: TenantUpdate,
    request: Request,
    actor: AdminActor,
    service: Service,
) -> TenantRead:
    _ensure_own_tenant(actor, tenant_id)
    set_audit_context(
        request,
        action="identity.tenant.update",
        detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True))}},
    )
    try:
        tenant = service.update_tenant(tenant_id, payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return TenantRead.model_validate(tenant)


@router.put("/tenants/{tenant_id}/active", response_model=TenantRead)
def set_tenant_active(
    tenant_id: str,
    payload: TenantActiveUpdate,
    request: Request,
    actor: AdminActor,
    service: Service,
) -> TenantRead:
    _ensure_own_tenant(actor, tenant_id)
    set_audit_context(request, action="identity.tenant.set_active", detail={"what": {"is_active": payload.is_active}})
    try:
        tenant = service.set_tenant_active(tenant_id, payload.is_active)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return TenantRead.model_validate(tenant)


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    try:
        user = service.bootstrap_admin(payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return UserRead.model_validate(user)


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.tenant_id, payload.email, payload.password)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    token = create_access_token(
        user_id=user.id,
        tenant_id=user.tenant_id,
        role=user.role,
        name=user.display_name,
    )
    return TokenResponse(access_token=token, role=user.role)


@router.get("/me", response_model=UserRead)
def get_me(actor: CurrentActor, service: Service) -> UserRead:
    try:
        user = service.get_user(actor.tenant_id, actor.user_id)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return UserRead.model_validate(user)


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, request: Request, actor: AdminActor, service: Service) -> UserRead:
    set_audit_context(request, action="identity.user.create", detail={"what": {"role": payload.role}})
    try:
        user = service.create_user(actor.tenant_id, payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return UserRead.model_validate(user)


@router.get("/users", response_model=list[UserRead])
def list_users(actor: AdminActor, service: Service) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_users(actor.tenant_id)]


@router.get("/technicians", response_model=list[UserRead])
def list_technicians(actor: AdminActor, service: Service) -> list[UserRead]:
    return [UserRead.model_validate(item) for item in service.list_technicians(actor.tenant_id)]


@router.patch("/users/{user_id}", response_model=UserRead)
def update_user(
    user_id: str,
    payload: UserUpdate,
    request: Request,
    actor: AdminActor,
    service: Service,
) -> UserRead:
    set_audit_context(
        request,
        action="identity.user.update",
        resource=f"user:{user_id}",
        detail={"what": {"fields": sorted(payload.model_dump(exclude_unset=True, exclude={"password"}))}},
    )
    try:
        user = service.update_user(actor.tenant_id, user_id, payload)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return UserRead.model_validate(user)


@router.put("/users/{user_id}/active", response_model=UserRead)
def set_user_active(
    user_id: str,
    payload: UserActiveUpdate,
    request: Request,
    actor: AdminActor,
    service: Service,
) -> UserRead:
    set_audit_context(
        request,
        action="identity.user.set_active",
        resource=f"user:{user_id}",
        detail={"what": {"is_active": payload.is_active}},
    )
    try:
        user = service.set_user_active(actor.tenant_id, user_id, payload.is_active)
    except WorkflowError as exc:
        handle_workflow_error(exc)
        raise
    return UserRead.model_validate(user)
