"""
HTTP Router: Dispatch for the Group-Call Endpoints

Framework-agnostic so the handlers can sit behind any ASGI/HTTP
adapter. A route is a method plus a path template with "{name}"
segments; the first registered template matching the path wins.

Unmatched paths answer 404; a path known under other methods answers
405 with an Allow header. Exceptions escaping a handler become a
masked 500.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_PARAM = re.compile(r"\{(\w+)\}")


@dataclass
class Request:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    path_params: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_raw(
        cls,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: bytes = b"",
    ) -> Request:
        """Build a request; header names are lower-cased, the query string dropped."""
        return cls(
            method=method.upper(),
            path=urlsplit(url).path,
            headers={k.lower(): v for k, v in (headers or {}).items()},
            body=body,
        )

    def json(self) -> Any:
        """Parsed body, or None when empty."""
        return json.loads(self.body) if self.body else None

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


@dataclass
class Response:
    status: int = 200
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(cls, data: Any, status: int = 200) -> Response:
        return cls(
            status=status,
            body=json.dumps(data, default=str).encode(),
            headers={"content-type": "application/json"},
        )

    @classmethod
    def error(cls, message: str, status: int = 400, **fields: Any) -> Response:
        return cls.json({"message": message, **fields}, status=status)

    def json_body(self) -> Any:
        return json.loads(self.body) if self.body else None


Handler = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Request, Handler], Awaitable[Response]]


@dataclass(frozen=True, slots=True)
class Route:
    method: str
    template: str
    pattern: re.Pattern
    handler: Handler

    @classmethod
    def compile(cls, method: str, template: str, handler: Handler) -> Route:
        regex = _PARAM.sub(lambda m: f"(?P<{m.group(1)}>[^/]+)", template)
        return cls(method.upper(), template, re.compile(f"^{regex}$"), handler)

    def params(self, path: str) -> Optional[dict[str, str]]:
        found = self.pattern.match(path)
        return found.groupdict() if found else None


class GroupCallRouter:
    """
    Ordered route table with a middleware chain.

    Register literal segments ("/group-call/pending") before the
    parameter that would shadow them ("/group-call/{call_id}").
    Middleware added first runs outermost.
    """

    __slots__ = ("_routes", "_middleware")

    def __init__(self) -> None:
        self._routes: list[Route] = []
        self._middleware: list[Middleware] = []

    def add(self, method: str, template: str, handler: Handler) -> None:
        self._routes.append(Route.compile(method, template, handler))

    def use(self, middleware: Middleware) -> None:
        self._middleware.append(middleware)

    async def dispatch(self, request: Request) -> Response:
        allowed: list[str] = []
        for route in self._routes:
            params = route.params(request.path)
            if params is None:
                continue
            if route.method != request.method:
                allowed.append(route.method)
                continue
            request.path_params = params
            return await self._invoke(route.handler, request)

        if allowed:
            response = Response.error("Method not allowed", status=405)
            response.headers["allow"] = ", ".join(sorted(set(allowed)))
            return response
        return Response.error("Not found", status=404)

    async def _invoke(self, handler: Handler, request: Request) -> Response:
        chain = handler
        for middleware in reversed(self._middleware):
            chain = _bind(middleware, chain)
        try:
            return await chain(request)
        except Exception:
            logger.exception(
                "Unhandled error in request handler",
                extra={"method": request.method, "path": request.path},
            )
            return Response.error("Internal server error", status=500)


def _bind(middleware: Middleware, handler: Handler) -> Handler:
    async def bound(request: Request) -> Response:
        return await middleware(request, handler)
    return bound
