from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from salesdesk.metrics import observe_http_request, resolve_http_path_label
from salesdesk.middleware.route_scope import resolve_route_scope


logger = logging.getLogger("salesdesk.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log and HTTP metrics, tagged with the pipeline operation and deal the request touches."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        scope = resolve_route_scope(method, request.url.path)
        route_fields = {
            "route_group": scope.group,
            "operation": scope.operation,
            "deal_id": scope.deal_id,
        }

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms, **route_fields},
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # the matched route is only known once the router has run
        path = resolve_http_path_label(request)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **route_fields,
            },
        )
        return response
