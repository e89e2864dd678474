"""HTTP middleware: request id propagation, access logging and request metrics."""
from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .monitoring import observe_request

logger = logging.getLogger("stablepay.http")

REQUEST_ID_HEADER = "X-Request-ID"

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    return request_id_var.get()


def route_label(request: Request) -> str:
    # Label metrics by route template so ids in the path do not explode cardinality.
    route = request.scope.get("route")
    return route.path if route else request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, then log and time it.

    An incoming ``X-Request-ID`` is reused; otherwise a new one is generated. The id is
    echoed on the response and attached to every log record emitted while handling it.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        request.state.request_id = request_id
        client = request.client.host if request.client else None
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.exception(
                    "request failed",
                    extra={"method": request.method, "path": route_label(request), "client": client},
                )
                observe_request(request.method, route_label(request), 500, duration_ms)
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            path = route_label(request)
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(
                level,
                "request completed",
                extra={
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "client": client,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            observe_request(request.method, path, response.status_code, duration_ms)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            request_id_var.reset(token)
