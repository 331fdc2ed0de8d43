from __future__ import annotations

from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from app import main as app_main
from app.domain.models import Actor, BootstrapAdminRequest, TenantCreate, UserCreate
from app.domain.state_machine import Role
from app.infra import audit, db, events
from app.services.identity_service import IdentityService


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "workflow_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture()
def patched_engine(monkeypatch: pytest.MonkeyPatch, engine: Engine) -> Engine:
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(audit, "engine", engine)
    monkeypatch.setattr(events, "engine", engine)
    return engine


@pytest.fixture()
def client(patched_engine: Engine) -> Generator[TestClient, None, None]:
    test_client = TestClient(app_main.app)
    yield test_client
    test_client.close()


class Seed:
    """Tenant with one admin and two technicians, created through the identity service."""

    def __init__(self, engine: Engine, name: str = "Acme Testing", prefix: str = "ACM") -> None:
        identity = IdentityService(engine)
        self.tenant = identity.create_tenant(TenantCreate(name=name, project_number_prefix=prefix))
        domain = prefix.lower()
        admin = identity.bootstrap_admin(
            BootstrapAdminRequest(tenant_id=self.tenant.id, email=f"admin@{domain}.test", password="pw", name="Ada Admin")
        )
        tech_a = identity.create_user(
            self.tenant.id,
            UserCreate(email=f"tina@{domain}.test", password="pw", name="Tina Tech", role=Role.TECHNICIAN),
        )
        tech_b = identity.create_user(
            self.tenant.id,
            UserCreate(email=f"tom@{domain}.test", password="pw", name="Tom Tech", role=Role.TECHNICIAN),
        )
        self.admin = Actor(user_id=admin.id, tenant_id=self.tenant.id, role=Role.ADMIN, name="Ada Admin")
        self.tech_a = Actor(user_id=tech_a.id, tenant_id=self.tenant.id, role=Role.TECHNICIAN, name="Tina Tech")
        self.tech_b = Actor(user_id=tech_b.id, tenant_id=self.tenant.id, role=Role.TECHNICIAN, name="Tom Tech")


@pytest.fixture()
def seed(engine: Engine) -> Seed:
    return Seed(engine)


@pytest.fixture()
def make_seed(engine: Engine) -> Callable[..., Seed]:
    def _make(name: str, prefix: str) -> Seed:
        return Seed(engine, name=name, prefix=prefix)

    return _make
