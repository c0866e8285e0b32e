"""
API Middleware: Cross-Cutting Concerns

Provides:
- IdentityMiddleware: caller identity from the X-User-Id header
- AccessLogMiddleware: request id, access log line and HTTP metrics
"""

from __future__ import annotations

import logging
import time
from typing import Optional
from uuid import uuid4

from groupcall.api.router import Handler, Request, Response
from groupcall.observability.logging import log_context
from groupcall.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

USER_HEADER = "x-user-id"
REQUEST_ID_HEADER = "x-request-id"


class IdentityMiddleware:
    """
    Rejects requests without an authenticated caller.

    Authentication happens upstream; the gateway forwards the
    verified user id in X-User-Id.
    """

    __slots__ = ("_skip_paths",)

    def __init__(self, skip_paths: tuple[str, ...] = ("/health", "/metrics")) -> None:
        self._skip_paths = skip_paths

    async def __call__(self, request: Request, handler: Handler) -> Response:
        if request.path in self._skip_paths:
            return await handler(request)
        user_id = (request.header(USER_HEADER) or "").strip()
        if not user_id:
            return Response.error("Authentication required", status=401)
        request.headers[USER_HEADER] = user_id
        return await handler(request)


class AccessLogMiddleware:
    """Logs one line per request and records HTTP metrics."""

    __slots__ = ("_requests", "_latency")

    def __init__(self, metrics: Optional[MetricsCollector] = None) -> None:
        collector = metrics or MetricsCollector()
        self._requests = collector.counter(
            "groupcall_http_requests_total",
            label_names=["method", "status"],
            help_text="HTTP requests by method and status",
        )
        self._latency = collector.histogram(
            "groupcall_http_request_seconds",
            label_names=["method"],
            help_text="HTTP request latency",
        )

    async def __call__(self, request: Request, handler: Handler) -> Response:
        request_id = request.header(REQUEST_ID_HEADER) or uuid4().hex
        start = time.perf_counter()
        with log_context(request_id=request_id, user_id=request.header(USER_HEADER)):
            response = await handler(request)
            elapsed = time.perf_counter() - start
            self._requests.inc(method=request.method, status=str(response.status))
            self._latency.observe(elapsed, method=request.method)
            logger.info(
                "%s %s -> %d",
                request.method,
                request.path,
                response.status,
                extra={"duration_ms": round(elapsed * 1000, 2)},
            )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response
