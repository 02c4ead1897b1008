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

crm_import_rows_total = Counter(
    "crm_import_rows_total",
    "Spreadsheet import rows by outcome",
    ["outcome"],
)

crm_import_duration_seconds = Histogram(
    "crm_import_duration_seconds",
    "Spreadsheet import duration in seconds",
)

crm_export_rows_total = Counter(
    "crm_export_rows_total",
    "Exported customer rows by format",
    ["format"],
)

crm_batch_items_total = Counter(
    "crm_batch_items_total",
    "Batch customer operations by action and outcome",
    ["action", "outcome"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


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


def observe_import(imported: int, failed: int, duration: float) -> None:
    if imported > 0:
        crm_import_rows_total.labels(outcome="imported").inc(imported)
    if failed > 0:
        crm_import_rows_total.labels(outcome="failed").inc(failed)
    crm_import_duration_seconds.observe(duration)


def observe_export(export_format: str, row_count: int) -> None:
    if row_count > 0:
        crm_export_rows_total.labels(format=export_format).inc(row_count)


def observe_batch(action: str, succeeded: int, failed: int) -> None:
    if succeeded > 0:
        crm_batch_items_total.labels(action=action, outcome="succeeded").inc(succeeded)
    if failed > 0:
        crm_batch_items_total.labels(action=action, outcome="failed").inc(failed)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
