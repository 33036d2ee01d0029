import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from heirloom.core.logging import request_id_ctx_var, latency_bucket_ms

# Not logged on completion
QUIET_PATHS = frozenset({"/healthz"})


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the lifetime of a request and log completion.

    An incoming x-request-id is honoured so callers can correlate across
    services; otherwise a uuid4 is minted.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        if request.url.path not in QUIET_PATHS:
            logging.getLogger("heirloom").info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms(duration_ms),
                },
            )
        return response
