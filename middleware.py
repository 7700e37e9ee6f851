"""
middleware.py - Request tracking and audit middleware
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
import uuid
import time
from logger import get_logger
from config import settings

logger = get_logger(__name__)

# Paths not worth an audit row
AUDIT_EXCLUDED_PATHS = {"/health", "/metrics"}


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        logger.info(
            f"Request {request_id}: {request.method} {request.url.path} "
            f"- {response.status_code} - {process_time:.3f}s"
        )

        return response


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """Record every document API call in the audit table"""

    def __init__(self, app, storage):
        super().__init__(app)
        self.storage = storage

    async def dispatch(self, request: Request, call_next):
        if not settings.enable_audit_log or request.url.path in AUDIT_EXCLUDED_PATHS:
            return await call_next(request)

        response = await call_next(request)

        path_params = dict(request.path_params)
        document_id = path_params.get("document_id")

        self.storage.log_audit(
            action=f"{request.method} {request.url.path}",
            request_id=getattr(request.state, "request_id", None),
            user_id=getattr(request.state, "user_id", None),
            resource_type="document" if document_id else None,
            resource_id=document_id,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("User-Agent"),
            status_code=response.status_code,
            metadata={
                "query_params": dict(request.query_params),
                "path_params": path_params
            }
        )

        return response
