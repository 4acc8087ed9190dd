import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from erasure.core.logging_config import correlation_id_ctx_var

logger = logging.getLogger("erasure.request")

_MAX_REQUEST_ID_LENGTH = 128


def _incoming_request_id(request: Request) -> str:
    candidate = (request.headers.get("X-Request-ID") or "").strip()
    if candidate and len(candidate) <= _MAX_REQUEST_ID_LENGTH and candidate.isprintable():
        return candidate
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and emit one access log line."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request)
        request.state.request_id = request_id
        token = correlation_id_ctx_var.set(request_id)
        started = time.monotonic()
        fields = {"path": request.url.path, "method": request.method}
        try:
            response = await call_next(request)
        except Exception:
            fields["duration_ms"] = int((time.monotonic() - started) * 1000)
            logger.exception("request_failed", extra=fields)
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            fields["status_code"] = response.status_code
            fields["duration_ms"] = int((time.monotonic() - started) * 1000)
            logger.info("request", extra=fields)
            return response
        finally:
            correlation_id_ctx_var.reset(token)
