"""
API Handlers: Group-Call HTTP Endpoints

Endpoints:
- POST /api/chat/rooms/{room_id}/calls           initiate (201, or 200 + alreadyActive)
- GET  /api/chat/group-call/pending              ringing calls for the caller
- GET  /api/chat/group-call/{call_id}            call details (participants only)
- POST /api/chat/group-call/{call_id}/join
- POST /api/chat/group-call/{call_id}/leave      (callEnded in body)
- POST /api/chat/group-call/{call_id}/decline
- GET  /health, GET /metrics
"""

from __future__ import annotations

import json
from typing import Any, Optional

from groupcall.api.middleware import USER_HEADER, AccessLogMiddleware, IdentityMiddleware
from groupcall.api.router import GroupCallRouter, Request, Response
from groupcall.core.errors import CallMeshError, ErrorCategory
from groupcall.observability.metrics import MetricsCollector
from groupcall.session.coordinator import SessionCoordinator

STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.FORBIDDEN: 403,
    ErrorCategory.INVALID_REQUEST: 400,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.CONTENTION: 409,
    ErrorCategory.STORAGE: 500,
    ErrorCategory.DELIVERY: 500,
    ErrorCategory.INTERNAL: 500,
}


def error_response(error: CallMeshError) -> Response:
    """Map a coordinator error to an HTTP response."""
    category = error.category
    status = STATUS_BY_CATEGORY.get(category, 500)
    body: dict[str, Any] = {
        "code": error.code.name,
        "errorId": error.error_id,
    }
    if category is ErrorCategory.CONTENTION:
        body["retryable"] = True
    # Storage and internal details stay in the logs
    message = error.message if status < 500 else "Internal server error"
    return Response.error(message, status=status, **body)


class GroupCallHandler:
    """
    Request handlers for the group-call endpoints.

    The caller id comes from the X-User-Id header (IdentityMiddleware
    rejects requests without one).
    """

    __slots__ = ("_coordinator",)

    def __init__(self, coordinator: SessionCoordinator) -> None:
        self._coordinator = coordinator

    async def initiate(self, request: Request) -> Response:
        """
        Request:
            POST /api/chat/rooms/{room_id}/calls
            {"callType": "video" | "audio"}   (optional, default video)
        """
        try:
            data = request.json() or {}
        except json.JSONDecodeError as e:
            return Response.error(f"Invalid JSON: {e}")
        if not isinstance(data, dict):
            return Response.error("Request body must be a JSON object")

        result = await self._coordinator.initiate(
            request.path_params["room_id"],
            _caller(request),
            data.get("callType", "video"),
        )
        if result.is_err():
            return error_response(result.error)

        started = result.value
        if started.already_active:
            return Response.json({
                "message": "Active call already exists for this room",
                "alreadyActive": True,
                "call": started.session.to_dict(),
            }, status=200)
        return Response.json({
            "message": "Group call initiated",
            "alreadyActive": False,
            "call": started.session.to_dict(),
        }, status=201)

    async def pending(self, request: Request) -> Response:
        result = await self._coordinator.pending(_caller(request))
        if result.is_err():
            return error_response(result.error)
        return Response.json({"calls": [s.to_dict() for s in result.value]})

    async def get_call(self, request: Request) -> Response:
        result = await self._coordinator.get_session(request.path_params["call_id"], _caller(request))
        if result.is_err():
            return error_response(result.error)
        return Response.json({"call": result.value.to_dict()})

    async def join(self, request: Request) -> Response:
        result = await self._coordinator.join(request.path_params["call_id"], _caller(request))
        if result.is_err():
            return error_response(result.error)
        return Response.json({"message": "Joined group call", "call": result.value.to_dict()})

    async def leave(self, request: Request) -> Response:
        result = await self._coordinator.leave(request.path_params["call_id"], _caller(request))
        if result.is_err():
            return error_response(result.error)
        left = result.value
        return Response.json({
            "message": "Left group call",
            "callEnded": left.call_ended,
            "call": left.session.to_dict(),
        })

    async def decline(self, request: Request) -> Response:
        result = await self._coordinator.decline(request.path_params["call_id"], _caller(request))
        if result.is_err():
            return error_response(result.error)
        return Response.json({"message": "Group call declined", "call": result.value.to_dict()})


def _caller(request: Request) -> str:
    return request.header(USER_HEADER, "") or ""


def build_router(
    coordinator: SessionCoordinator,
    metrics: Optional[MetricsCollector] = None,
    expose_metrics: bool = True,
) -> GroupCallRouter:
    """Wire handlers and middleware into a router."""
    collector = metrics or coordinator.metrics
    handler = GroupCallHandler(coordinator)
    router = GroupCallRouter()
    router.use(AccessLogMiddleware(collector))
    router.use(IdentityMiddleware())

    router.add("POST", "/api/chat/rooms/{room_id}/calls", handler.initiate)
    router.add("GET", "/api/chat/group-call/pending", handler.pending)
    router.add("GET", "/api/chat/group-call/{call_id}", handler.get_call)
    router.add("POST", "/api/chat/group-call/{call_id}/join", handler.join)
    router.add("POST", "/api/chat/group-call/{call_id}/leave", handler.leave)
    router.add("POST", "/api/chat/group-call/{call_id}/decline", handler.decline)

    async def health(request: Request) -> Response:
        return Response.json({"status": "ok"})

    async def metrics_endpoint(request: Request) -> Response:
        return Response(
            status=200,
            body=collector.export_prometheus().encode(),
            headers={"content-type": "text/plain; version=0.0.4"},
        )

    router.add("GET", "/health", health)
    if expose_metrics:
        router.add("GET", "/metrics", metrics_endpoint)
    return router
