"""
Prometheus metrics: HTTP request counters and latency, plus the executor
and decision engine series that the services update directly.
"""

import time

from prometheus_client import Counter, Histogram, Gauge
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Executor metrics ─────────────────────────────────────────────────────────

executor_cycles_total = Counter(
    "executor_cycles_total",
    "Executor cycles by outcome",
    ["outcome"],  # "executed" | "deferred" | "idle" | "skipped" | "network_unavailable"
)

executor_cycle_duration_seconds = Histogram(
    "executor_cycle_duration_seconds",
    "Executor cycle duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0),
)

executor_batch_size = Histogram(
    "executor_batch_size",
    "Number of actions claimed per executor cycle",
    buckets=(1, 2, 5, 10, 20, 50, 100),
)

actions_executed_total = Counter(
    "actions_executed_total",
    "Actions that reached an execution outcome",
    ["type", "status"],  # status: "success" | "failed" | "pending"
)

pending_actions = Gauge(
    "pending_actions",
    "Actions awaiting reconciliation at the start of the last executor cycle",
)

conversion_rate = Gauge(
    "conversion_rate",
    "Current GRT/DAI conversion rate pushed to cost models",
)

# ── Decision engine metrics ──────────────────────────────────────────────────

decision_actions_emitted_total = Counter(
    "decision_actions_emitted_total",
    "Actions queued by the decision engine",
    ["type"],
)

decision_cycles_total = Counter(
    "decision_cycles_total",
    "Decision cycles by outcome",
    ["outcome"],  # "completed" | "deferred" | "manual_mode"
)


def _route_template(request: Request) -> str:
    """/api/actions/42 is recorded as /api/actions/{action_id}; unrouted paths share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        path = _route_template(request)

        http_requests_total.labels(request.method, path, response.status_code).inc()
        http_request_duration_seconds.labels(request.method, path).observe(time.perf_counter() - start)
        return response
