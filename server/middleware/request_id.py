"""
Request ID middleware for HTTP request tracing.

Propagates (or generates) an X-Request-ID header and exposes it to the
logging formatters through request_id_var. WebSocket traffic is tagged with
the connection id instead.
"""

import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from logging_config import request_id_var

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 1.0


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    HTTP middleware for request ID generation and propagation.

    - Reuses the client's X-Request-ID when present
    - Stores it on request.state and in the logging context
    - Echoes it on the response
    - Logs requests slower than SLOW_REQUEST_SECONDS
    """

    def __init__(
        self,
        app,
        header_name: str = "X-Request-ID",
        generator: Optional[Callable[[], str]] = None,
    ):
        super().__init__(app)
        self.header_name = header_name
        self.generator = generator or (lambda: uuid.uuid4().hex)

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(self.header_name) or self.generator()
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        started = time.monotonic()

        try:
            response = await call_next(request)
            response.headers[self.header_name] = request_id
            return response
        finally:
            elapsed = time.monotonic() - started
            if elapsed > SLOW_REQUEST_SECONDS:
                logger.warning(f"Slow request {request.method} {request.url.path}: {elapsed:.2f}s")
            request_id_var.reset(token)
