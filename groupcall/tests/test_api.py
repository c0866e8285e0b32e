"""
Integration Tests: HTTP Router and Handlers

Tests:
    - Status codes and bodies for every endpoint
    - Identity middleware
    - Error mapping (404/403/400/409 with retryable)
    - Routing fallbacks, /health and /metrics
"""

import json

import pytest

from groupcall.api.handlers import build_router, error_response
from groupcall.api.router import GroupCallRouter, Request, Response, Route
from groupcall.core.errors import LifecycleError, ReliabilityError, StorageError


def call(router, method, path, user=None, body=None, headers=None):
    h = dict(headers or {})
    if user is not None:
        h["X-User-Id"] = user
    raw = json.dumps(body).encode() if body is not None else b""
    return router.dispatch(Request.from_raw(method, path, headers=h, body=raw))


@pytest.fixture
def router(coordinator):
    return build_router(coordinator)


async def start_call(router, room="R42", user="U1"):
    response = await call(router, "POST", f"/api/chat/rooms/{room}/calls", user=user, body={"callType": "video"})
    assert response.status == 201
    return response.json_body()["call"]


class TestInitiateEndpoint:
    """POST /api/chat/rooms/{room_id}/calls"""

    @pytest.mark.asyncio
    async def test_created(self, router):
        response = await call(router, "POST", "/api/chat/rooms/R42/calls", user="U1", body={"callType": "audio"})
        assert response.status == 201
        body = response.json_body()
        assert body["alreadyActive"] is False
        assert body["call"]["call_type"] == "audio"
        assert body["call"]["status"] == "ringing"
        assert response.headers["content-type"] == "application/json"
        assert "x-request-id" in response.headers

    @pytest.mark.asyncio
    async def test_default_call_type(self, router):
        response = await call(router, "POST", "/api/chat/rooms/R42/calls", user="U1")
        assert response.status == 201
        assert response.json_body()["call"]["call_type"] == "video"

    @pytest.mark.asyncio
    async def test_already_active(self, router):
        first = await start_call(router)
        response = await call(router, "POST", "/api/chat/rooms/R42/calls", user="U2", body={})
        assert response.status == 200
        body = response.json_body()
        assert body["alreadyActive"] is True
        assert body["call"]["id"] == first["id"]

    @pytest.mark.asyncio
    async def test_invalid_call_type(self, router):
        response = await call(router, "POST", "/api/chat/rooms/R42/calls", user="U1", body={"callType": "fax"})
        assert response.status == 400
        assert response.json_body()["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_malformed_json(self, router):
        response = await router.dispatch(Request.from_raw(
            "POST", "/api/chat/rooms/R42/calls", headers={"X-User-Id": "U1"}, body=b"{nope",
        ))
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_non_object_body(self, router):
        response = await call(router, "POST", "/api/chat/rooms/R42/calls", user="U1", body=["video"])
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_unknown_room(self, router):
        response = await call(router, "POST", "/api/chat/rooms/NOPE/calls", user="U1")
        assert response.status == 404
        assert response.json_body()["code"] == "ROOM_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_not_a_member(self, router):
        response = await call(router, "POST", "/api/chat/rooms/R7/calls", user="U2")
        assert response.status == 403


class TestCallEndpoints:
    """join / leave / decline / get / pending"""

    @pytest.mark.asyncio
    async def test_full_call(self, router):
        created = await start_call(router)
        base = f"/api/chat/group-call/{created['id']}"

        response = await call(router, "POST", f"{base}/join", user="U2")
        assert response.status == 200
        assert response.json_body()["call"]["status"] == "active"

        response = await call(router, "POST", f"{base}/leave", user="U1")
        assert response.status == 200
        assert response.json_body()["callEnded"] is False

        response = await call(router, "POST", f"{base}/leave", user="U2")
        body = response.json_body()
        assert body["callEnded"] is True
        assert body["call"]["status"] == "ended"

        response = await call(router, "POST", f"{base}/join", user="U3")
        assert response.status == 404
        assert response.json_body()["code"] == "SESSION_TERMINAL"

    @pytest.mark.asyncio
    async def test_decline(self, router):
        created = await start_call(router)
        response = await call(router, "POST", f"/api/chat/group-call/{created['id']}/decline", user="U3")
        assert response.status == 200
        statuses = {p["user_id"]: p["status"] for p in response.json_body()["call"]["participants"]}
        assert statuses["U3"] == "declined"

    @pytest.mark.asyncio
    async def test_get_call(self, router):
        created = await start_call(router)
        response = await call(router, "GET", f"/api/chat/group-call/{created['id']}", user="U2")
        assert response.status == 200
        assert response.json_body()["call"]["id"] == created["id"]

        response = await call(router, "GET", f"/api/chat/group-call/{created['id']}", user="U4")
        assert response.status == 403

        response = await call(router, "GET", "/api/chat/group-call/missing", user="U2")
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_pending_route_wins_over_call_id(self, router):
        created = await start_call(router)
        response = await call(router, "GET", "/api/chat/group-call/pending", user="U3")
        assert response.status == 200
        assert [c["id"] for c in response.json_body()["calls"]] == [created["id"]]

    @pytest.mark.asyncio
    async def test_join_as_outsider(self, router):
        created = await start_call(router)
        response = await call(router, "POST", f"/api/chat/group-call/{created['id']}/join", user="U4")
        assert response.status == 403
        assert response.json_body()["code"] == "NOT_A_PARTICIPANT"


class TestMiddleware:
    """Identity and access logging."""

    @pytest.mark.asyncio
    async def test_missing_identity(self, router):
        response = await call(router, "GET", "/api/chat/group-call/pending")
        assert response.status == 401

    @pytest.mark.asyncio
    async def test_blank_identity(self, router):
        response = await call(router, "GET", "/api/chat/group-call/pending", user="   ")
        assert response.status == 401

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, router):
        response = await call(
            router, "GET", "/api/chat/group-call/pending", user="U1", headers={"X-Request-Id": "req-1"},
        )
        assert response.headers["x-request-id"] == "req-1"

    @pytest.mark.asyncio
    async def test_health_and_metrics_skip_identity(self, router, coordinator):
        response = await call(router, "GET", "/health")
        assert response.status == 200
        assert response.json_body() == {"status": "ok"}

        await call(router, "GET", "/api/chat/group-call/pending", user="U1")
        response = await call(router, "GET", "/metrics")
        assert response.status == 200
        text = response.body.decode()
        assert "groupcall_http_requests_total" in text
        assert 'method="GET"' in text

    @pytest.mark.asyncio
    async def test_metrics_can_be_hidden(self, coordinator):
        router = build_router(coordinator, expose_metrics=False)
        response = await call(router, "GET", "/metrics")
        assert response.status == 404


class TestRouting:
    """Router fallbacks."""

    @pytest.mark.asyncio
    async def test_unknown_path(self, router):
        response = await call(router, "GET", "/api/nothing", user="U1")
        assert response.status == 404

    @pytest.mark.asyncio
    async def test_wrong_method(self, router):
        response = await call(router, "DELETE", "/api/chat/group-call/pending", user="U1")
        assert response.status == 405
        assert response.headers["allow"] == "GET"

    @pytest.mark.asyncio
    async def test_unhandled_exception_becomes_500(self):
        router = GroupCallRouter()

        async def boom(request: Request) -> Response:
            raise RuntimeError("kaboom")

        router.add("GET", "/boom", boom)
        response = await router.dispatch(Request.from_raw("GET", "/boom"))
        assert response.status == 500
        assert "kaboom" not in response.body.decode()

    @pytest.mark.asyncio
    async def test_literal_segment_registered_first_wins(self):
        router = GroupCallRouter()
        seen = []

        async def pending(request: Request) -> Response:
            seen.append("pending")
            return Response.json({})

        async def detail(request: Request) -> Response:
            seen.append(request.path_params["call_id"])
            return Response.json({})

        router.add("GET", "/group-call/pending", pending)
        router.add("GET", "/group-call/{call_id}", detail)
        await router.dispatch(Request.from_raw("GET", "/group-call/pending"))
        await router.dispatch(Request.from_raw("GET", "/group-call/abc?ignored=1"))
        assert seen == ["pending", "abc"]

    def test_route_params(self):
        route = Route.compile("post", "/calls/{call_id}/join", None)
        assert route.method == "POST"
        assert route.params("/calls/abc/join") == {"call_id": "abc"}
        assert route.params("/calls/abc/leave") is None
        assert route.params("/calls/a/b/join") is None


class TestErrorResponse:
    """error_response mapping."""

    def test_contention_is_retryable_conflict(self):
        response = error_response(ReliabilityError.contention("join", 3))
        assert response.status == 409
        body = response.json_body()
        assert body["retryable"] is True
        assert body["code"] == "RELIABILITY_CONTENTION"

    def test_storage_details_are_masked(self):
        error = StorageError.backend_error("redis", "get", OSError("10.0.0.5 refused"))
        response = error_response(error)
        assert response.status == 500
        body = response.json_body()
        assert body["message"] == "Internal server error"
        assert body["errorId"] == error.error_id
        assert "10.0.0.5" not in response.body.decode()

    def test_lifecycle_messages_pass_through(self):
        response = error_response(LifecycleError.not_found("s1"))
        assert response.status == 404
        assert "s1" in response.json_body()["message"]
        assert "retryable" not in response.json_body()
