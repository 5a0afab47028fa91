import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every log line emitted while handling a request with its request id."""

    async def dispatch(self, request, call_next):
        req_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        request.state.request_id = req_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=req_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-Id"] = req_id
        return response
