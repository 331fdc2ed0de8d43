from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import dashboard, identity, notifications, projects, tasks
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready
from app.infra.logging import configure_logging
from app.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="fieldlab-workflow",
    description="Multi-tenant field inspection workflow: project numbering, task lifecycle, notifications.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(projects.router, prefix="/api/projects", tags=["projects"])
app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(dashboard.router, prefix="/api/dashboard", tags=["dashboard"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
