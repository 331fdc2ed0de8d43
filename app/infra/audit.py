from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AuditLog, now_utc
from app.infra.db import engine

logger = logging.getLogger(__name__)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
AUDITED_READ_PATH_KEYWORDS = ("/history", "/activity")
UNAUDITED_PATHS = frozenset({"/healthz", "/readyz"})
AUDIT_CONTEXT_STATE_KEY = "_audit_context"

# path parameter -> resource kind used when a router sets no explicit resource
RESOURCE_PATH_PARAMS = (
    ("task_id", "task"),
    ("project_id", "project"),
    ("notification_id", "notification"),
    ("tenant_id", "tenant"),
)


def write_audit_log(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail or {},
            )
        )
        session.commit()


def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        current = merged.get(key)
        merged[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def outcome_for(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in (401, 403, 404):
        return "denied"
    return "rejected" if status_code >= 400 else "success"


def should_audit_request(method: str, path: str) -> bool:
    if path in UNAUDITED_PATHS:
        return False
    return method in WRITE_METHODS or any(keyword in path for keyword in AUDITED_READ_PATH_KEYWORDS)


def route_template(path: str, path_params: dict[str, Any]) -> str:
    """Full request path with each path-parameter value put back as ``{name}``."""
    names_by_value = {str(value): name for name, value in path_params.items()}
    segments = [f"{{{names_by_value[segment]}}}" if segment in names_by_value else segment for segment in path.split("/")]
    return "/".join(segments)


def default_resource(path: str, path_params: dict[str, Any]) -> str:
    for param, kind in RESOURCE_PATH_PARAMS:
        value = path_params.get(param)
        if value is not None:
            return f"{kind}:{value}"
    return path


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    """Attach action/resource/detail overrides for the audit row of this request.

    Routers may call this more than once; detail dictionaries are merged.
    """
    current = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, None)
    context: dict[str, Any] = dict(current) if isinstance(current, dict) else {}
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = _merge(previous, detail) if isinstance(previous, dict) else detail
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


class AuditMiddleware(BaseHTTPMiddleware):
    """One ``AuditLog`` row per state-changing request and per history/activity read.

    Rows are keyed by the caller's tenant (``system`` for anonymous calls such
    as tenant onboarding and login) and named after the route template, so
    task and project ids never leak into the action name.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        context = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, None)
        if not isinstance(context, dict):
            context = {}
        method = request.method
        path = request.url.path
        if path in UNAUDITED_PATHS:
            return response
        if not context and not should_audit_request(method, path):
            return response

        claims = getattr(request.state, "claims", None) or {}
        route_path = route_template(path, request.path_params)
        action = context.get("action") if isinstance(context.get("action"), str) else f"{method}:{route_path}"
        resource = context.get("resource")
        if not isinstance(resource, str):
            resource = default_resource(path, request.path_params)
        tenant_id = claims.get("tenant_id", "system")
        actor_id = claims.get("sub")

        detail: dict[str, Any] = {
            "who": {"tenant_id": tenant_id, "actor_id": actor_id, "role": claims.get("role")},
            "when": {"request_ts": now_utc().isoformat()},
            "where": {
                "path": path,
                "route": route_path,
                "query": request.url.query,
                "client_ip": request.client.host if request.client is not None else None,
            },
            "what": {"action": action, "resource": resource, "method": method},
            "result": {"status_code": response.status_code, "outcome": outcome_for(response.status_code)},
        }
        extra = context.get("detail")
        if isinstance(extra, dict):
            detail = _merge(detail, extra)

        try:
            write_audit_log(
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            logger.exception("audit write failed for %s %s", method, path)
        return response
