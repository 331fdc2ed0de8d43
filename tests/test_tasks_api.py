from __future__ import annotations

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app.domain.models import AuditLog, ProjectCreate
from app.services.project_service import ProjectService


def _login(client: TestClient, tenant_id: str, email: str) -> dict[str, str]:
    response = client.post(
        "/api/identity/dev-login",
        json={"tenant_id": tenant_id, "email": email, "password": "pw"},
    )
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def test_task_endpoints_require_token(client: TestClient) -> None:
    assert client.get("/api/tasks").status_code == 401
    assert client.get("/api/tasks", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_task_lifecycle_over_http(client: TestClient, patched_engine, seed) -> None:
    project = ProjectService(patched_engine).create_project(seed.admin, ProjectCreate(project_name="Runway 9"))
    admin = _login(client, seed.tenant.id, "admin@acm.test")
    tina = _login(client, seed.tenant.id, "tina@acm.test")
    tom = _login(client, seed.tenant.id, "tom@acm.test")

    created = client.post(
        "/api/tasks",
        json={
            "project_id": project.id,
            "task_type": "PROCTOR",
            "assigned_technician_id": seed.tech_a.user_id,
            "due_date": "2025-05-01",
        },
        headers=admin,
    )
    assert created.status_code == 201
    body = created.json()
    assert body["warnings"] == []
    task_id = body["task"]["id"]
    assert body["task"]["status"] == "ASSIGNED"
    assert body["task"]["proctor_no"] == 1

    assert client.post(
        "/api/tasks",
        json={"project_id": project.id, "task_type": "REBAR"},
        headers=tina,
    ).status_code == 403
    assert client.post(
        "/api/tasks",
        json={"project_id": project.id, "task_type": "REBAR", "due_date": "05/01/2025"},
        headers=admin,
    ).status_code == 422

    assert client.get(f"/api/tasks/{task_id}", headers=tom).status_code == 403
    assert client.get("/api/tasks/missing", headers=admin).status_code == 404
    assert [item["id"] for item in client.get("/api/tasks", headers=tina).json()] == [task_id]
    assert client.get("/api/tasks", headers=tom).json() == []

    denied = client.put(f"/api/tasks/{task_id}/status", json={"status": "APPROVED"}, headers=tina)
    assert denied.status_code == 403
    skipped = client.put(f"/api/tasks/{task_id}/status", json={"status": "READY_FOR_REVIEW"}, headers=tina)
    assert skipped.status_code == 400

    started = client.put(f"/api/tasks/{task_id}/status", json={"status": "IN_PROGRESS_TECH"}, headers=tina)
    assert started.status_code == 200
    assert started.json()["task"]["status"] == "IN_PROGRESS_TECH"
    submitted = client.put(f"/api/tasks/{task_id}/status", json={"status": "READY_FOR_REVIEW"}, headers=tina)
    assert submitted.status_code == 200
    assert submitted.json()["task"]["report_submitted"] is True

    ready = client.get("/api/tasks", params={"status": "READY_FOR_REVIEW"}, headers=admin).json()
    assert [item["id"] for item in ready] == [task_id]

    missing_remarks = client.post(
        f"/api/tasks/{task_id}/reject",
        json={"resubmission_due_date": "2025-05-10"},
        headers=admin,
    )
    assert missing_remarks.status_code == 400
    rejected = client.post(
        f"/api/tasks/{task_id}/reject",
        json={"rejection_remarks": "retest sample 2", "resubmission_due_date": "2025-05-10"},
        headers=admin,
    )
    assert rejected.status_code == 200
    assert rejected.json()["task"]["status"] == "REJECTED_NEEDS_FIX"

    assert client.post(f"/api/tasks/{task_id}/approve", headers=tina).status_code == 403
    approved = client.post(f"/api/tasks/{task_id}/approve", headers=admin)
    assert approved.status_code == 200
    assert approved.json()["task"]["status"] == "APPROVED"
    assert client.post(f"/api/tasks/{task_id}/approve", headers=admin).status_code == 400

    history = client.get(f"/api/tasks/{task_id}/history", headers=admin)
    assert history.status_code == 200
    assert [item["action_type"] for item in history.json()] == ["APPROVED", "REJECTED", "SUBMITTED"]
    assert history.json()[1]["note"] == "retest sample 2"

    with Session(patched_engine) as session:
        reads = session.exec(select(AuditLog).where(AuditLog.action == "GET:/api/tasks/{task_id}/history")).all()
        rejects = session.exec(select(AuditLog).where(AuditLog.action == "task.reject")).all()
    assert [(row.resource, row.tenant_id) for row in reads] == [(f"task:{task_id}", seed.tenant.id)]
    assert sorted(row.status_code for row in rejects) == [200, 400]
    assert {row.detail["who"]["role"] for row in rejects} == {"ADMIN"}


def test_reassign_edit_and_field_complete_over_http(client: TestClient, patched_engine, seed) -> None:
    project = ProjectService(patched_engine).create_project(seed.admin, ProjectCreate(project_name="Levee"))
    admin = _login(client, seed.tenant.id, "admin@acm.test")
    tina = _login(client, seed.tenant.id, "tina@acm.test")
    tom = _login(client, seed.tenant.id, "tom@acm.test")
    task_id = client.post(
        "/api/tasks",
        json={"project_id": project.id, "task_type": "REBAR", "assigned_technician_id": seed.tech_a.user_id},
        headers=admin,
    ).json()["task"]["id"]

    edited = client.patch(f"/api/tasks/{task_id}", json={"engagement_notes": "call site lead"}, headers=tina)
    assert edited.status_code == 200
    assert edited.json()["task"]["engagement_notes"] == "call site lead"
    assert client.patch(f"/api/tasks/{task_id}", json={"due_date": "2025-06-01"}, headers=tina).status_code == 403
    assert client.patch(f"/api/tasks/{task_id}", json={}, headers=admin).status_code == 400

    completed = client.post(f"/api/tasks/{task_id}/mark-field-complete", headers=tina)
    assert completed.status_code == 200
    assert completed.json()["task"]["field_completed"] is True

    moved = client.post(
        f"/api/tasks/{task_id}/reassign",
        json={"assigned_technician_id": seed.tech_b.user_id},
        headers=admin,
    )
    assert moved.status_code == 200
    assert moved.json()["task"]["assigned_technician_id"] == seed.tech_b.user_id
    assert client.get(f"/api/tasks/{task_id}", headers=tom).status_code == 200
    assert client.get(f"/api/tasks/{task_id}", headers=tina).status_code == 403
    assert client.post(
        f"/api/tasks/{task_id}/reassign",
        json={"assigned_technician_id": "nobody"},
        headers=admin,
    ).status_code == 404

    project_tasks = client.get(f"/api/projects/{project.id}/tasks", headers=tom)
    assert [item["id"] for item in project_tasks.json()] == [task_id]
    assert client.get(f"/api/projects/{project.id}/tasks", headers=tina).json() == []


def test_tasks_are_tenant_scoped_over_http(client: TestClient, patched_engine, seed, make_seed) -> None:
    other = make_seed("Other Lab", "OTH")
    project = ProjectService(patched_engine).create_project(seed.admin, ProjectCreate(project_name="Dam"))
    admin = _login(client, seed.tenant.id, "admin@acm.test")
    other_admin = _login(client, other.tenant.id, "admin@oth.test")
    task_id = client.post(
        "/api/tasks",
        json={"project_id": project.id, "task_type": "CYLINDER_PICKUP"},
        headers=admin,
    ).json()["task"]["id"]

    assert client.get(f"/api/tasks/{task_id}", headers=other_admin).status_code == 404
    assert client.post(f"/api/tasks/{task_id}/approve", headers=other_admin).status_code == 404
    assert client.get("/api/tasks", headers=other_admin).json() == []
    assert client.post(
        "/api/tasks",
        json={"project_id": project.id, "task_type": "REBAR"},
        headers=other_admin,
    ).status_code == 404
