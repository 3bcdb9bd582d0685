"""Request id propagation and HTTP error logging."""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from mediaflow.core.logging import log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the logging context for the whole request.

    - 4xx responses: logged at WARNING
    - 5xx responses: logged at ERROR
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        start_time = time.time()

        with log_context(request_id=request_id):
            response = await call_next(request)
            duration_ms = round((time.time() - start_time) * 1000, 2)

            details = {
                "context": {
                    "http_status": response.status_code,
                    "method": request.method,
                    "path": request.url.path,
                },
                "metrics": {"durationMs": duration_ms},
            }
            if 400 <= response.status_code < 500:
                logger.warning("Client error response", extra=details)
            elif response.status_code >= 500:
                logger.error("Server error response", extra=details)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
