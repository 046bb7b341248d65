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

workpackage_assemblies_total = Counter(
    "workpackage_assemblies_total",
    "Total work package assemblies and CSV merges by mode and outcome",
    ["assembly_type", "outcome"],
)

workpackage_assembly_duration_seconds = Histogram(
    "workpackage_assembly_duration_seconds",
    "Work package assembly duration in seconds",
    ["assembly_type"],
)

workpackage_schedule_recalculations_total = Counter(
    "workpackage_schedule_recalculations_total",
    "Total full schedule cascades by trigger",
    ["trigger"],
)

workpackage_data_quality_warnings_total = Counter(
    "workpackage_data_quality_warnings_total",
    "Total effort data-quality warnings by code",
    ["code"],
)

workpackage_write_conflicts_total = Counter(
    "workpackage_write_conflicts_total",
    "Total optimistic-concurrency conflicts on work package writes",
)

workpackage_item_status_propagations_total = Counter(
    "workpackage_item_status_propagations_total",
    "Total collateral status propagations by outcome",
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


def observe_assembly(assembly_type: str, outcome: str, duration: float) -> None:
    workpackage_assemblies_total.labels(assembly_type=assembly_type, outcome=outcome).inc()
    workpackage_assembly_duration_seconds.labels(assembly_type=assembly_type).observe(duration)


def observe_schedule_recalculation(trigger: str) -> None:
    workpackage_schedule_recalculations_total.labels(trigger=trigger).inc()


def observe_data_quality_warning(code: str) -> None:
    workpackage_data_quality_warnings_total.labels(code=code).inc()


def observe_write_conflict() -> None:
    workpackage_write_conflicts_total.inc()


def observe_item_status_propagation(outcome: str) -> None:
    workpackage_item_status_propagations_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
