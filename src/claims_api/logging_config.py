"""Logging setup and per-request access logging."""
import logging
import os
import sys
import time
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

access_logger = logging.getLogger("claims_api.access")


# PUBLIC_INTERFACE
def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging on stdout. Level defaults to LOG_LEVEL or INFO."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=_FORMAT,
        stream=sys.stdout,
    )
    # uvicorn's access log duplicates RequestLoggingMiddleware.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("passlib").setLevel(logging.ERROR)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log 'METHOD path [status] Nms' for every request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            access_logger.info(
                "%s %s [%s] %.1fms",
                request.method,
                request.url.path,
                status_code,
                duration_ms,
            )
