from __future__ import annotations

import hashlib
import logging
import os

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    BootstrapAdminRequest,
    Task,
    Tenant,
    TenantCreate,
    TenantUpdate,
    User,
    UserCreate,
    UserUpdate,
    now_utc,
)
from app.domain.state_machine import TERMINAL_STATUSES, Role
from app.infra.db import get_engine
from app.services.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# tenant columns that are NOT NULL; a PATCH may change them but never clear them
REQUIRED_TENANT_FIELDS = frozenset(
    {"name", "project_number_prefix", "project_number_format", "primary_color", "secondary_color"}
)


class AuthError(AuthorizationError):
    pass


class IdentityService:
    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    def _session(self) -> Session:
        return Session(self._engine or get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "fieldlab-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def _get_scoped_user(self, session: Session, tenant_id: str, user_id: str) -> User | None:
        statement = select(User).where(User.tenant_id == tenant_id).where(User.id == user_id)
        return session.exec(statement).first()

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        name = payload.name.strip()
        if not name:
            raise ValidationError("tenant name is required")
        with self._session() as session:
            tenant = Tenant(
                name=name,
                project_number_prefix=payload.project_number_prefix.strip(),
                project_number_format=payload.project_number_format,
                company_address=payload.company_address,
                company_city=payload.company_city,
                company_state=payload.company_state,
                company_zip=payload.company_zip,
                company_phone=payload.company_phone,
                company_email=payload.company_email,
                company_website=payload.company_website,
            )
            session.add(tenant)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name already exists") from exc
            session.refresh(tenant)
            logger.info("tenant %s onboarded with prefix %s", tenant.id, tenant.project_number_prefix)
            return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            return tenant

    def update_tenant(self, tenant_id: str, payload: TenantUpdate) -> Tenant:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            updates = payload.model_dump(exclude_unset=True)
            for key, value in updates.items():
                if isinstance(value, str):
                    value = value.strip()
                if key in REQUIRED_TENANT_FIELDS and not value:
                    raise ValidationError(f"{key} cannot be empty")
                setattr(tenant, key, value)
            tenant.updated_at = now_utc()
            session.add(tenant)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name already exists") from exc
            session.refresh(tenant)
            return tenant

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Tenant:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            tenant.is_active = is_active
            tenant.updated_at = now_utc()
            session.add(tenant)
            session.commit()
            session.refresh(tenant)
            logger.info("tenant %s active=%s", tenant_id, is_active)
            return tenant

    def create_user(self, tenant_id: str, payload: UserCreate) -> User:
        with self._session() as session:
            if session.get(Tenant, tenant_id) is None:
                raise NotFoundError("tenant not found")
            user = User(
                tenant_id=tenant_id,
                email=payload.email.strip().lower(),
                name=payload.name,
                role=payload.role,
                password_hash=self._hash_password(payload.password),
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("user email already exists") from exc
            session.refresh(user)
            return user

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            tenant = session.get(Tenant, payload.tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            tenant_users = session.exec(select(User).where(User.tenant_id == payload.tenant_id)).all()
            if tenant_users:
                raise ConflictError("tenant already initialized")

            admin_user = User(
                tenant_id=payload.tenant_id,
                email=payload.email.strip().lower(),
                name=payload.name,
                role=Role.ADMIN,
                password_hash=self._hash_password(payload.password),
                is_active=True,
            )
            session.add(admin_user)
            session.commit()
            session.refresh(admin_user)
            return admin_user

    def list_users(self, tenant_id: str, role: Role | None = None) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.tenant_id == tenant_id)
            if role is not None:
                statement = statement.where(User.role == role)
            statement = statement.order_by(col(User.created_at).asc())
            return list(session.exec(statement).all())

    def list_technicians(self, tenant_id: str) -> list[User]:
        return [user for user in self.list_users(tenant_id, Role.TECHNICIAN) if user.is_active]

    def get_user(self, tenant_id: str, user_id: str) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def update_user(self, tenant_id: str, user_id: str, payload: UserUpdate) -> User:
        updates = payload.model_dump(exclude_unset=True, exclude_none=True)
        if not updates:
            raise ValidationError("no fields to update")
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if "email" in updates:
                email = updates["email"].strip().lower()
                taken = session.exec(
                    select(User)
                    .where(User.tenant_id == tenant_id)
                    .where(User.email == email)
                    .where(User.id != user_id)
                ).first()
                if taken is not None:
                    raise ConflictError("user email already exists")
                user.email = email
            if "name" in updates:
                user.name = updates["name"].strip() or None
            if "password" in updates:
                user.password_hash = self._hash_password(updates["password"])
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("user email already exists") from exc
            session.refresh(user)
            logger.info("user %s updated fields %s", user_id, sorted(updates))
            return user

    def set_user_active(self, tenant_id: str, user_id: str, is_active: bool) -> User:
        """Enable or disable a login; a user still holding open work cannot be disabled."""
        with self._session() as session:
            user = self._get_scoped_user(session, tenant_id, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if not is_active:
                open_tasks = session.exec(
                    select(Task.id)
                    .where(Task.tenant_id == tenant_id)
                    .where(Task.assigned_technician_id == user_id)
                    .where(col(Task.status).not_in(TERMINAL_STATUSES))
                ).all()
                if open_tasks:
                    raise ConflictError(f"user has {len(open_tasks)} open task(s) assigned")
            user.is_active = is_active
            session.add(user)
            session.commit()
            session.refresh(user)
            logger.info("user %s active=%s", user_id, is_active)
            return user

    def dev_login(self, tenant_id: str, email: str, password: str) -> User:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise AuthError("invalid credentials")
            if not tenant.is_active:
                raise AuthError("tenant disabled")
            statement = (
                select(User)
                .where(User.tenant_id == tenant_id)
                .where(User.email == email.strip().lower())
            )
            user = session.exec(statement).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")
            return user
