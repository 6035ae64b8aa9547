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

revenue_status_transitions_total = Counter(
    "revenue_status_transitions_total",
    "Lifecycle status transitions by entity",
    ["entity", "from_status", "to_status"],
)

revenue_conflicts_total = Counter(
    "revenue_conflicts_total",
    "Conditional writes that lost a race or hit a uniqueness constraint",
    ["entity", "operation"],
)

revenue_conversions_total = Counter(
    "revenue_conversions_total",
    "Conversions by kind and outcome",
    ["kind", "outcome"],
)

revenue_token_failures_total = Counter(
    "revenue_token_failures_total",
    "Rejected public token resolutions by kind",
    ["entity", "kind"],
)

revenue_token_cache_hit_total = Counter(
    "revenue_token_cache_hit_total",
    "Public token lookups served from cache",
    ["entity"],
)

revenue_token_cache_miss_total = Counter(
    "revenue_token_cache_miss_total",
    "Public token lookups that went to the database",
    ["entity"],
)

revenue_expiry_sweep_total = Counter(
    "revenue_expiry_sweep_total",
    "Entities handled by the expiry sweep",
    ["entity", "outcome"],
)

revenue_expiry_sweep_duration_seconds = Histogram(
    "revenue_expiry_sweep_duration_seconds",
    "Expiry sweep duration in seconds",
    ["entity"],
)

revenue_signature_reminders_total = Counter(
    "revenue_signature_reminders_total",
    "Signature reminders published for agreements awaiting signature",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_TOKEN_RE = re.compile(r"/[0-9a-f]{32,128}\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_tokens = _TOKEN_RE.sub("/{token}", path)
    return _UUID_RE.sub("{id}", without_tokens)


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


def observe_status_transition(entity: str, from_status: str, to_status: str) -> None:
    revenue_status_transitions_total.labels(entity=entity, from_status=str(from_status), to_status=str(to_status)).inc()


def observe_conflict(entity: str, operation: str) -> None:
    revenue_conflicts_total.labels(entity=entity, operation=operation).inc()


def observe_conversion(kind: str, outcome: str) -> None:
    revenue_conversions_total.labels(kind=kind, outcome=outcome).inc()


def observe_token_failure(entity: str, kind: str) -> None:
    revenue_token_failures_total.labels(entity=entity, kind=kind).inc()


def observe_token_cache_hit(entity: str) -> None:
    revenue_token_cache_hit_total.labels(entity=entity).inc()


def observe_token_cache_miss(entity: str) -> None:
    revenue_token_cache_miss_total.labels(entity=entity).inc()


def observe_expiry_sweep(entity: str, expired: int, skipped: int, duration: float) -> None:
    if expired > 0:
        revenue_expiry_sweep_total.labels(entity=entity, outcome="expired").inc(expired)
    if skipped > 0:
        revenue_expiry_sweep_total.labels(entity=entity, outcome="skipped").inc(skipped)
    revenue_expiry_sweep_duration_seconds.labels(entity=entity).observe(duration)


def observe_signature_reminders(count: int) -> None:
    if count > 0:
        revenue_signature_reminders_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
