"""
API module: HTTP routing, middleware and group-call handlers.
"""

from groupcall.api.router import GroupCallRouter, Request, Response
from groupcall.api.handlers import GroupCallHandler, build_router, error_response

__all__ = [
    "GroupCallRouter",
    "Request",
    "Response",
    "GroupCallHandler",
    "build_router",
    "error_response",
]
