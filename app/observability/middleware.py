import asyncio
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.observability.logging import request_id_ctx

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        start = time.perf_counter()

        # attach to request state for handlers, and to the log context
        request.state.request_id = rid
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)

        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info(
            "%s %s -> %s in %.2fms [%s]",
            request.method,
            request.url.path,
            response.status_code,
            dur_ms,
            rid,
        )
        response.headers["x-request-id"] = rid
        return response


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """Abort requests that run longer than timeout_ms with a 504."""

    def __init__(self, app, timeout_ms: int):
        super().__init__(app)
        self.timeout_seconds = timeout_ms / 1000.0

    async def dispatch(self, request: Request, call_next):
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return JSONResponse(
                status_code=504,
                content={
                    "error": "Gateway Timeout",
                    "message": f"Request exceeded {int(self.timeout_seconds * 1000)}ms",
                    "requestId": get_request_id(request),
                },
            )


def get_request_id(request: Request) -> str:
    # middleware sets this
    return getattr(request.state, "request_id", "unknown")
