"""
Request tracking middleware: request ids and access logging.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Awaitable, Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_var.get()


def generate_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """
    Propagates or generates X-Request-ID and logs each request.

    Health checks are not logged.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        token = request_id_var.set(request_id)
        request.state.request_id = request_id

        path = request.url.path
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "%s %s failed after %.1fms: %s [%s]",
                request.method,
                path,
                (time.time() - start_time) * 1000,
                type(e).__name__,
                request_id,
            )
            raise
        finally:
            request_id_var.reset(token)

        if not path.startswith("/health"):
            logger.info(
                "%s %s -> %d in %.1fms [%s]",
                request.method,
                path,
                response.status_code,
                (time.time() - start_time) * 1000,
                request_id,
            )

        response.headers["X-Request-ID"] = request_id
        return response
