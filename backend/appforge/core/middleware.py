"""
AppForge - HTTP Middleware
Request ids, project context and access logging
"""

import re
import time
from typing import Callable, Set

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from appforge.core.logging_config import (
    generate_request_id,
    logger,
    set_project_id,
    set_request_id,
)


# Probes and docs are not worth an access log line
SKIP_LOGGING_PATHS: Set[str] = {"/", "/health", "/docs", "/redoc", "/openapi.json"}

_PROJECT_PATH_RE = re.compile(r"/projects/(?P<project_id>[^/]+)")


def project_id_from_path(path: str) -> str:
    """Project id of /projects/{id}/... paths, or an empty string"""
    match = _PROJECT_PATH_RE.search(path)
    return match.group("project_id") if match else ""


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id (taken from X-Request-ID when the caller
    sends one) and the project it targets, and logs its outcome and duration.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        path = request.url.path
        set_request_id(request_id)
        set_project_id(project_id_from_path(path))

        log_access = path not in SKIP_LOGGING_PATHS
        http = {"http_method": request.method, "http_path": path}
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = (time.perf_counter() - started) * 1000
            logger.error(
                f"{request.method} {path} raised {type(exc).__name__} ({elapsed:.2f}ms)",
                exc_info=True,
                extra={"event_type": "http_request_error", "duration_ms": elapsed, **http},
            )
            set_request_id("")
            set_project_id("")
            raise

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed:.2f}ms"

        if log_access:
            status_code = response.status_code
            level = "error" if status_code >= 500 else "warning" if status_code >= 400 else "info"
            getattr(logger, level)(
                f"{request.method} {path} -> {status_code} ({elapsed:.2f}ms)",
                extra={"event_type": "http_request", "http_status": status_code,
                       "duration_ms": elapsed, **http},
            )

        set_request_id("")
        set_project_id("")
        return response
