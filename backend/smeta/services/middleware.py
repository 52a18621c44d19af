"""Request tracing for the Smeta API: request ids, timing and one access line per call."""
import time
import uuid
import logging
from typing import Any, Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("smeta-api.middleware")

SKIP_LOG_PATHS = {"/health"}

# Route parameters worth lifting onto the access line
TRACED_PATH_PARAMS = ("estimate_id", "act_id")


def request_context(request: Request) -> Dict[str, Any]:
    """Estimate / act ids of the matched route, once routing has filled ``path_params``."""
    params = request.scope.get("path_params") or {}
    return {name: params[name] for name in TRACED_PATH_PARAMS if name in params}


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Tags every response with ``X-Request-ID`` and ``X-Process-Time`` (ms).

    An incoming ``X-Request-ID`` is kept so a trace can span the frontend and a
    proxy. The access line carries the estimate or act the call touched;
    server errors are logged at warning level, health checks not at all.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path in SKIP_LOG_PATHS:
            return response

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                **request_context(request),
                "http_method": request.method,
                "http_path": request.url.path,
                "http_status": response.status_code,
                "request_id": request_id,
                "duration_ms": duration_ms,
            },
        )
        return response
