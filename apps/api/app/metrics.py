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

request_transitions_total = Counter(
    "request_transitions_total",
    "Committed request status transitions",
    ["from_status", "to_status"],
)

admission_denials_total = Counter(
    "admission_denials_total",
    "Activation attempts rejected by the per-company limit",
)

workflow_executions_total = Counter(
    "workflow_executions_total",
    "Workflow rule executions by trigger and outcome",
    ["trigger_type", "status"],
)

workflow_execution_duration_seconds = Histogram(
    "workflow_execution_duration_seconds",
    "Workflow rule execution duration in seconds",
    ["trigger_type"],
)

workflow_guardrail_blocks_total = Counter(
    "workflow_guardrail_blocks_total",
    "Total workflow guardrail blocks by reason",
    ["reason"],
)

notification_emails_total = Counter(
    "notification_emails_total",
    "Notification email outcomes",
    ["outcome"],
)

webhook_calls_total = Counter(
    "webhook_calls_total",
    "Outbound webhook calls by outcome",
    ["outcome"],
)

scheduled_task_runs_total = Counter(
    "scheduled_task_runs_total",
    "Scheduled task runs by task and status",
    ["task", "status"],
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


def observe_request_transition(from_status: str, to_status: str) -> None:
    request_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def observe_admission_denial() -> None:
    admission_denials_total.inc()


def observe_workflow_execution(trigger_type: str, status: str, duration: float) -> None:
    workflow_executions_total.labels(trigger_type=trigger_type, status=status).inc()
    workflow_execution_duration_seconds.labels(trigger_type=trigger_type).observe(duration)


def observe_workflow_guardrail_block(reason: str) -> None:
    workflow_guardrail_blocks_total.labels(reason=reason).inc()


def observe_notification_email(outcome: str) -> None:
    notification_emails_total.labels(outcome=outcome).inc()


def observe_webhook_call(outcome: str) -> None:
    webhook_calls_total.labels(outcome=outcome).inc()


def observe_scheduled_task(task: str, status: str) -> None:
    scheduled_task_runs_total.labels(task=task, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
