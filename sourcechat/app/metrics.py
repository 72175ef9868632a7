from __future__ import annotations

import time

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

from sourcechat.app.settings import settings

REQUEST_COUNT = Counter(
    "sourcechat_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "sourcechat_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
MODEL_CALLS = Counter(
    "sourcechat_model_calls_total",
    "Model calls by operation and outcome",
    ["operation", "outcome"],
)


async def metrics_middleware(request: Request, call_next):
    if not settings.metrics_enabled:
        return await call_next(request)
    path = request.url.path
    if path == "/metrics":
        return await call_next(request)
    start = time.monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        REQUEST_COUNT.labels(request.method, path, str(status)).inc()
        REQUEST_LATENCY.labels(request.method, path).observe(time.monotonic() - start)


def record_model_call(operation: str, outcome: str) -> None:
    if settings.metrics_enabled:
        MODEL_CALLS.labels(operation, outcome).inc()


def metrics_response() -> Response:
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
