"""HTTP middleware: metrics, tracing, correlation IDs and request logging.

Paths are collapsed to route templates before they become metric labels or
span names, since every job id and artifact name is unique.
"""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from vidsqueeze.core.logging import clear_correlation_id, set_correlation_id
from vidsqueeze.core.metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
    HTTP_REQUESTS_TOTAL,
)
from vidsqueeze.core.tracing import add_span_attributes, create_span, record_exception

CORRELATION_ID_HEADER = "X-Correlation-ID"
_CORRELATION_ID_RE = re.compile(r"[A-Za-z0-9._:-]{1,128}")

# Health and scrape endpoints, polled constantly
QUIET_PATHS = frozenset({"/api/ping", "/api/metrics"})


def route_label(path: str) -> str:
    """Route template for ``path``.

    >>> route_label("/api/status/3f8a2c1e")
    '/api/status/{id}'
    >>> route_label("/3f8a2c1e.mp4")
    '/{file}'
    """
    if path.startswith("/api/status/"):
        return "/api/status/{id}"
    if path.startswith("/api/") or path == "/":
        return path
    if path.startswith("/static/"):
        return "/static/{asset}"
    return "/{file}"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Request count, latency and in-flight gauge per route."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = route_label(request.url.path)
        in_progress = HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=endpoint)

        in_progress.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )
            HTTP_REQUESTS_TOTAL.labels(
                method=method, endpoint=endpoint, status_code=str(status_code)
            ).inc()
            in_progress.dec()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Accepts a client-supplied correlation ID or mints one.

    Malformed or oversized IDs are replaced rather than echoed into logs.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        supplied = request.headers.get(CORRELATION_ID_HEADER, "")
        correlation_id = supplied if _CORRELATION_ID_RE.fullmatch(supplied) else str(uuid.uuid4())

        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


class TracingMiddleware(BaseHTTPMiddleware):
    """One server span per request, named after the route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        route = route_label(request.url.path)
        attributes = {
            "http.method": request.method,
            "http.route": route,
            "http.target": request.url.path,
            "http.user_agent": request.headers.get("user-agent"),
            "http.request_content_length": request.headers.get("content-length"),
        }
        with create_span(f"{request.method} {route}", attributes=attributes, kind=trace.SpanKind.SERVER) as span:
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                raise
            add_span_attributes({"http.status_code": response.status_code})
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR))
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per finished request.

    Health checks and metric scrapes are only logged when they fail.
    """

    def __init__(self, app: ASGIApp, log_upload_size: bool = True):
        super().__init__(app)
        self.log_upload_size = log_upload_size
        self.logger = logging.getLogger("vidsqueeze.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        details = {
            "method": request.method,
            "path": path,
            "client_ip": request.client.host if request.client else None,
        }
        if self.log_upload_size and request.method == "POST":
            details["content_length"] = request.headers.get("content-length")

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            details["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
            self.logger.exception("Request failed", extra=details)
            raise

        details["status_code"] = response.status_code
        details["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        if response.status_code >= 500:
            self.logger.error("Request completed", extra=details)
        elif path not in QUIET_PATHS or response.status_code >= 400:
            self.logger.info("Request completed", extra=details)
        return response
