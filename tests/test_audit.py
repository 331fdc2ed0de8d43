from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from app.domain.models import AuditLog
from app.infra.audit import route_template


def _audit_rows(engine: Engine, action: str) -> list[AuditLog]:
    with Session(engine) as session:
        return list(session.exec(select(AuditLog).where(AuditLog.action == action)).all())


def test_route_template_restores_path_parameters() -> None:
    assert route_template("/api/projects", {}) == "/api/projects"
    assert route_template("/api/tasks/abc-123/history", {"task_id": "abc-123"}) == "/api/tasks/{task_id}/history"
    assert (
        route_template("/api/identity/tenants/t-1/active", {"tenant_id": "t-1"})
        == "/api/identity/tenants/{tenant_id}/active"
    )


def test_actions_are_named_after_the_full_route(client: TestClient, patched_engine: Engine, seed) -> None:
    login = client.post(
        "/api/identity/dev-login",
        json={"tenant_id": seed.tenant.id, "email": "tina@acm.test", "password": "pw"},
    )
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['access_token']}"}

    denied = client.post("/api/projects", json={"project_name": "Quay"}, headers=headers)
    assert denied.status_code == 403

    [login_row] = _audit_rows(patched_engine, "POST:/api/identity/dev-login")
    assert login_row.tenant_id == "system"
    assert login_row.detail["where"]["route"] == "/api/identity/dev-login"

    [project_row] = _audit_rows(patched_engine, "POST:/api/projects")
    assert project_row.tenant_id == seed.tenant.id
    assert project_row.status_code == 403
    assert project_row.detail["result"]["outcome"] == "denied"
