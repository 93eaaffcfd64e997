from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_activities_emitted_total = Counter(
    "crm_activities_emitted_total",
    "Total activities appended to the ledger by type",
    ["type"],
)

crm_forbidden_mutations_total = Counter(
    "crm_forbidden_mutations_total",
    "Total rejected update/delete attempts against append-only entities",
    ["entity", "verb"],
)

crm_workflow_executions_total = Counter(
    "crm_workflow_executions_total",
    "Total recorded workflow executions by status",
    ["status"],
)

crm_workflow_execution_duration_seconds = Histogram(
    "crm_workflow_execution_duration_seconds",
    "Workflow execution duration in seconds",
    ["status"],
)

crm_automation_ticks_total = Counter(
    "crm_automation_ticks_total",
    "Automation engine ticks by outcome",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_activity_emitted(activity_type: str) -> None:
    crm_activities_emitted_total.labels(type=activity_type).inc()


def observe_forbidden_mutation(entity: str, verb: str) -> None:
    crm_forbidden_mutations_total.labels(entity=entity, verb=verb).inc()


def observe_workflow_execution(status: str, duration: float) -> None:
    crm_workflow_executions_total.labels(status=status).inc()
    crm_workflow_execution_duration_seconds.labels(status=status).observe(duration)


def observe_automation_tick(outcome: str) -> None:
    crm_automation_ticks_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
