import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from core.logging import request_id_var

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id and reports its latency.

    An incoming ``X-Request-ID`` is kept so a caller can correlate its own
    logs with the run. The id is exposed as ``request.state.request_id``, in
    every log record, and in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        started = time.perf_counter()
        try:
            response: Response = await call_next(request)
            latency_ms = int((time.perf_counter() - started) * 1000)
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} in {latency_ms}ms")
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)
        return response
