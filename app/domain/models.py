from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.domain.state_machine import Role, TaskStatus

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
OPTIONAL_DATE_PATTERN = r"^(\d{4}-\d{2}-\d{2})?$"
DEFAULT_PROJECT_NUMBER_FORMAT = "PREFIX-YYYY-NNNN"


def now_utc() -> datetime:
    return datetime.now(UTC)


class TaskType(StrEnum):
    DENSITY_MEASUREMENT = "DENSITY_MEASUREMENT"
    PROCTOR = "PROCTOR"
    REBAR = "REBAR"
    COMPRESSIVE_STRENGTH = "COMPRESSIVE_STRENGTH"
    CYLINDER_PICKUP = "CYLINDER_PICKUP"


TASK_TYPE_LABELS: dict[TaskType, str] = {
    TaskType.COMPRESSIVE_STRENGTH: "Compressive Strength",
    TaskType.DENSITY_MEASUREMENT: "Density Measurement",
    TaskType.PROCTOR: "Proctor",
    TaskType.REBAR: "Rebar",
    TaskType.CYLINDER_PICKUP: "Cylinder Pickup",
}


class HistoryAction(StrEnum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REASSIGNED = "REASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"


class NotificationType(StrEnum):
    INFO = "info"
    WARNING = "warning"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    project_number_prefix: str = Field(default="02")
    project_number_format: str = Field(default=DEFAULT_PROJECT_NUMBER_FORMAT)
    company_address: str | None = None
    company_city: str | None = None
    company_state: str | None = None
    company_zip: str | None = None
    company_phone: str | None = None
    company_email: str | None = None
    company_website: str | None = None
    primary_color: str = Field(default="#007bff")
    secondary_color: str = Field(default="#6c757d")
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        Index("ix_users_tenant_role", "tenant_id", "role"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    email: str = Field(index=True)
    name: str | None = None
    role: Role = Field(default=Role.TECHNICIAN)
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)

    @property
    def display_name(self) -> str:
        return self.name or self.email


class ProjectCounter(SQLModel, table=True):
    __tablename__ = "project_counters"

    tenant_id: str = Field(primary_key=True)
    year: int = Field(primary_key=True)
    next_seq: int = Field(default=1)
    updated_at: datetime = Field(default_factory=now_utc)


class Project(SQLModel, table=True):
    __tablename__ = "projects"
    __table_args__ = (
        UniqueConstraint("tenant_id", "project_number", name="uq_projects_tenant_number"),
        UniqueConstraint("tenant_id", "project_name", name="uq_projects_tenant_name"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    project_number: str = Field(index=True)
    project_name: str
    customer_emails: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    soil_specs: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    concrete_specs: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("project_id", "task_type", "proctor_no", name="uq_tasks_project_proctor_no"),
        Index("ix_tasks_tenant_status", "tenant_id", "status"),
        Index("ix_tasks_tenant_technician", "tenant_id", "assigned_technician_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    task_type: TaskType
    status: TaskStatus = Field(default=TaskStatus.ASSIGNED)
    assigned_technician_id: str | None = Field(default=None, foreign_key="users.id")
    due_date: str | None = None
    scheduled_start_date: str | None = None
    scheduled_end_date: str | None = None
    location_name: str | None = None
    location_notes: str | None = None
    engagement_notes: str | None = None
    rejection_remarks: str | None = None
    resubmission_due_date: str | None = None
    field_completed: bool = Field(default=False)
    field_completed_at: datetime | None = None
    report_submitted: bool = Field(default=False)
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    last_edited_by_user_id: str | None = None
    last_edited_by_role: Role | None = None
    last_edited_at: datetime | None = None
    proctor_no: int | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class TaskHistory(SQLModel, table=True):
    __tablename__ = "task_history"
    __table_args__ = (Index("ix_task_history_task_ts", "task_id", "timestamp"),)

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    task_id: str = Field(foreign_key="tasks.id", index=True)
    timestamp: datetime = Field(default_factory=now_utc, index=True)
    actor_role: Role
    actor_name: str
    actor_user_id: str | None = None
    action_type: HistoryAction
    note: str | None = None


class Notification(SQLModel, table=True):
    __tablename__ = "notifications"
    __table_args__ = (Index("ix_notifications_user_read", "user_id", "is_read"),)

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    message: str
    type: NotificationType = Field(default=NotificationType.INFO)
    is_read: bool = Field(default=False)
    related_task_id: str | None = None
    related_project_id: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    tenant_id: str
    role: Role
    name: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class TenantCreate(BaseModel):
    name: str = PydanticField(min_length=1)
    project_number_prefix: str = PydanticField(default="02", min_length=1, max_length=16)
    project_number_format: str = DEFAULT_PROJECT_NUMBER_FORMAT
    company_address: str | None = None
    company_city: str | None = None
    company_state: str | None = None
    company_zip: str | None = None
    company_phone: str | None = None
    company_email: str | None = None
    company_website: str | None = None


class TenantUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1)
    project_number_prefix: str | None = PydanticField(default=None, min_length=1, max_length=16)
    company_address: str | None = None
    company_city: str | None = None
    company_state: str | None = None
    company_zip: str | None = None
    company_phone: str | None = None
    company_email: str | None = None
    company_website: str | None = None
    primary_color: str | None = None
    secondary_color: str | None = None


class TenantActiveUpdate(BaseModel):
    is_active: bool


class TenantRead(ORMReadModel):
    id: str
    name: str
    project_number_prefix: str
    project_number_format: str
    company_address: str | None = None
    company_city: str | None = None
    company_state: str | None = None
    company_zip: str | None = None
    company_phone: str | None = None
    company_email: str | None = None
    company_website: str | None = None
    primary_color: str
    secondary_color: str
    is_active: bool
    created_at: datetime


class UserCreate(BaseModel):
    email: str = PydanticField(min_length=3)
    password: str = PydanticField(min_length=1)
    name: str | None = None
    role: Role = Role.TECHNICIAN
    is_active: bool = True


class UserUpdate(BaseModel):
    email: str | None = PydanticField(default=None, min_length=3)
    password: str | None = PydanticField(default=None, min_length=1)
    name: str | None = None


class UserActiveUpdate(BaseModel):
    is_active: bool


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    email: str
    name: str | None = None
    role: Role
    is_active: bool
    created_at: datetime


class DevLoginRequest(BaseModel):
    tenant_id: str
    email: str
    password: str


class BootstrapAdminRequest(BaseModel):
    tenant_id: str
    email: str
    password: str
    name: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: Role


class ProjectCreate(BaseModel):
    project_name: str
    customer_emails: list[str] | None = None
    soil_specs: dict[str, Any] | None = None
    concrete_specs: dict[str, Any] | None = None

    @field_validator("customer_emails")
    @classmethod
    def _validate_emails(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return value
        if not value:
            raise ValueError("customer_emails must be a non-empty array")
        cleaned = [item.strip() for item in value]
        if any("@" not in item for item in cleaned):
            raise ValueError("customer_emails must contain email addresses")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("Duplicate emails are not allowed")
        return cleaned


class ProjectUpdate(ProjectCreate):
    project_name: str | None = None  # type: ignore[assignment]


class ProjectRead(ORMReadModel):
    id: str
    tenant_id: str
    project_number: str
    project_name: str
    customer_emails: list[str]
    soil_specs: dict[str, Any]
    concrete_specs: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class ProjectNumberRead(BaseModel):
    sequence: int
    formatted_number: str


class TaskCreate(BaseModel):
    project_id: str
    task_type: TaskType
    assigned_technician_id: str | None = None
    due_date: str | None = PydanticField(default=None, pattern=OPTIONAL_DATE_PATTERN)
    scheduled_start_date: str | None = PydanticField(default=None, pattern=OPTIONAL_DATE_PATTERN)
    scheduled_end_date: str | None = PydanticField(default=None, pattern=OPTIONAL_DATE_PATTERN)
    location_name: str | None = None
    location_notes: str | None = None
    engagement_notes: str | None = None


class TaskFieldsUpdate(BaseModel):
    assigned_technician_id: str | None = None
    due_date: str | None = PydanticField(default=None, pattern=OPTIONAL_DATE_PATTERN)
    scheduled_start_date: str | None = PydanticField(default=None, pattern=OPTIONAL_DATE_PATTERN)
    scheduled_end_date: str | None = PydanticField(default=None, pattern=OPTIONAL_DATE_PATTERN)
    location_name: str | None = None
    location_notes: str | None = None
    engagement_notes: str | None = None
    task_type: TaskType | None = None


class TaskStatusRequest(BaseModel):
    status: TaskStatus


class TaskRejectRequest(BaseModel):
    rejection_remarks: str | None = None
    resubmission_due_date: str | None = None


class TaskReassignRequest(BaseModel):
    assigned_technician_id: str


class TaskRead(ORMReadModel):
    id: str
    tenant_id: str
    project_id: str
    task_type: TaskType
    status: TaskStatus
    assigned_technician_id: str | None = None
    due_date: str | None = None
    scheduled_start_date: str | None = None
    scheduled_end_date: str | None = None
    location_name: str | None = None
    location_notes: str | None = None
    engagement_notes: str | None = None
    rejection_remarks: str | None = None
    resubmission_due_date: str | None = None
    field_completed: bool
    field_completed_at: datetime | None = None
    report_submitted: bool
    submitted_at: datetime | None = None
    completed_at: datetime | None = None
    last_edited_by_user_id: str | None = None
    last_edited_by_role: Role | None = None
    last_edited_at: datetime | None = None
    proctor_no: int | None = None
    created_at: datetime
    updated_at: datetime


class TaskOutcomeRead(BaseModel):
    task: TaskRead
    warnings: list[str] = PydanticField(default_factory=list)


class TaskHistoryRead(ORMReadModel):
    id: int
    task_id: str
    timestamp: datetime
    actor_role: Role
    actor_name: str
    actor_user_id: str | None = None
    action_type: HistoryAction
    note: str | None = None


class NotificationRead(ORMReadModel):
    id: int
    user_id: str
    message: str
    type: NotificationType
    is_read: bool
    related_task_id: str | None = None
    related_project_id: str | None = None
    project_number: str | None = None
    created_at: datetime


class UnreadCountRead(BaseModel):
    count: int


class MarkAllReadRead(BaseModel):
    success: bool = True
    updated: int


class DashboardStatsRead(BaseModel):
    total: int
    by_status: dict[str, int]
    overdue: int
    open_reports: int


class ActivityRead(BaseModel):
    task_id: str
    project_id: str
    kind: str
    at: datetime
    actor_name: str | None = None
    note: str | None = None
