import time
import uuid
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from app.core.request_context import HDR_REQUEST_ID

logger = logging.getLogger("access")

class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every HTTP request and tags it with a request id"""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get(HDR_REQUEST_ID) or uuid.uuid4().hex
        request.state.request_id = request_id

        logger.info(
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'} - "
            f"User-Agent: {request.headers.get('user-agent', 'unknown')}"
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.4f}s"
        )

        response.headers["X-Process-Time"] = str(process_time)
        response.headers[HDR_REQUEST_ID] = request_id
        return response
