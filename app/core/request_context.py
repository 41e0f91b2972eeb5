from typing import Optional, Dict
from fastapi import Request

# Header set by the gateway or client
HDR_REQUEST_ID = "X-Request-Id"

def get_request_context(request: Request) -> Dict[str, Optional[str]]:
    """
    Extracts endpoint, client IP, user-agent and request_id from the FastAPI Request
    for the audit trail. request_id is the one LoggingMiddleware tagged the request with,
    falling back to the header when the middleware is not installed.
    """
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "endpoint": f"{request.method} {request.url.path}",
        "request_id": getattr(request.state, "request_id", None) or request.headers.get(HDR_REQUEST_ID),
    }
