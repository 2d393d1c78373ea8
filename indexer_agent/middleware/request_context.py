"""
Request context middleware.

Generates or propagates X-Request-ID headers and keeps the current
correlation id in a ContextVar. Worker cycles bind their own id the same way
so their log lines can be told apart.
"""

import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return _request_id_var.get()


@contextmanager
def bound_request_id(request_id: str | None = None):
    """Bind a correlation id for the duration of the block."""
    token = _request_id_var.set(request_id or uuid4().hex)
    try:
        yield _request_id_var.get()
    finally:
        _request_id_var.reset(token)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        with bound_request_id(request.headers.get("X-Request-ID")) as request_id:
            response = await call_next(request)
            duration_ms = round((time.time() - start_time) * 1000, 2)
            logger.info(
                "%s %s %s %.0fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={"duration_ms": duration_ms},
            )

        response.headers["X-Request-ID"] = request_id
        return response
