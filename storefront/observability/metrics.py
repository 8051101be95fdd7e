"""
Prometheus metrics for the capacity and automation engine.

Metric objects live at module level because the default prometheus registry
is process-global; creating them per app instance would register duplicates.
"""

import time

from flask import Flask, Response, request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

http_requests_total = Counter(
    "storefront_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "storefront_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)

AUTOMATION_TRANSITIONS = Counter(
    "storefront_automation_transitions_total",
    "Automation state transitions by target state",
    ["state"],
)

CLAIM_CONFLICTS = Counter(
    "storefront_automation_claim_conflicts_total",
    "Claims or completions rejected because the store was not in the expected state",
    ["operation"],
)

QUOTA_DENIALS = Counter(
    "storefront_quota_denials_total",
    "Store creations or capacity checkouts refused by the quota",
    ["reason"],
)

DOMAIN_ERRORS = Counter(
    "storefront_domain_errors_total",
    "Domain errors rendered by the error handlers",
    ["code"],
)

SWEEP_RUNS = Counter(
    "storefront_automation_sweeps_total",
    "Automation sweep executions",
    ["status"],
)


def register_metrics(app: Flask) -> None:
    """Attach request timing hooks when metrics are enabled."""
    if not app.config.get("METRICS_ENABLED", True):
        return

    @app.before_request
    def _start_timer() -> None:
        request._metrics_start_time = time.perf_counter()  # type: ignore[attr-defined]

    @app.after_request
    def _record_request(response: Response) -> Response:
        endpoint = request.endpoint or "unmatched"
        start_time = getattr(request, "_metrics_start_time", None)
        if start_time is not None:
            http_request_duration_seconds.labels(
                method=request.method, endpoint=endpoint
            ).observe(time.perf_counter() - start_time)
        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        return response


def metrics_response() -> Response:
    return Response(
        generate_latest(),
        content_type=CONTENT_TYPE_LATEST,
        headers={"Cache-Control": "no-cache"},
    )
