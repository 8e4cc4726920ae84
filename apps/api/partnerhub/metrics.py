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

referrals_transitions_total = Counter(
    "referrals_transitions_total",
    "Prospect lifecycle transitions by outcome",
    ["transition", "outcome"],
)

referrals_decision_duration_seconds = Histogram(
    "referrals_decision_duration_seconds",
    "Duration of the decide transaction in seconds",
    ["transition"],
)

referrals_clients_provisioned_total = Counter(
    "referrals_clients_provisioned_total",
    "Clients created by prospect approval",
)

referrals_notification_failures_total = Counter(
    "referrals_notification_failures_total",
    "Notification sink deliveries that failed after all attempts",
    ["sink"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(transition: str, outcome: str) -> None:
    referrals_transitions_total.labels(transition=transition, outcome=outcome).inc()


def observe_decision_duration(transition: str, duration: float) -> None:
    referrals_decision_duration_seconds.labels(transition=transition).observe(duration)


def observe_client_provisioned() -> None:
    referrals_clients_provisioned_total.inc()


def observe_notification_failure(sink: str) -> None:
    referrals_notification_failures_total.labels(sink=sink).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
