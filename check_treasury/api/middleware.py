"""FastAPI middleware for request tracing"""

import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..logging_config import correlation_context, get_logger, log_action


logger = get_logger("treasury.api")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, echo it back and log the outcome under it"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        # Domain log lines and units of work opened by the handler pick it up
        with correlation_context(request_id):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        log_action(
            logger, "info", f"{request.method} {request.url.path} -> {response.status_code}",
            user_id=request.headers.get("X-User-Id"),
            correlation_id=request_id,
            extra={"duration_ms": round((time.time() - start_time) * 1000, 2)},
        )
        return response
