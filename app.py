"""
app.py - Document search and range-replace API
"""
import asyncio
from pathlib import Path
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional, Dict

from fastapi import FastAPI, File, UploadFile, HTTPException, Request, Depends, status, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

# Rate limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# Prometheus metrics
from prometheus_client import CONTENT_TYPE_LATEST

# Internal imports
from config import settings
from security import APIKeyAuth
from cache_manager import CacheManager
from storage import Storage
from document_service import DocumentService
from errors import DocumentError, ConflictError
from logger import get_logger
from middleware import RequestIDMiddleware, AuditLoggingMiddleware
from metrics import track_request, search_hits, get_metrics

logger = get_logger(__name__)

try:
    cache_manager = CacheManager(
        redis_url=settings.get('redis_url') or None,
        ttl=settings.get('cache_ttl', 3600),
        max_memory_cache=settings.get('max_cache_size', 10000)
    )
    storage = Storage(settings.get('database_url'))

    # The in-process tier cannot see replacements made by other workers
    multi_worker = settings.get('environment') == "production" and settings.get('workers', 1) > 1
    text_cache = cache_manager
    if multi_worker and cache_manager.backend == "memory":
        logger.warning("No REDIS_URL with several workers: document text caching disabled")
        text_cache = None

    service = DocumentService(storage, text_cache, upload_dir=settings.get('upload_dir'))
    auth = APIKeyAuth(settings.get('api_key')) if settings.get('require_auth') else None
except Exception as e:
    logger.critical(f"Failed to initialize core components: {e}")
    raise

auth_dependencies = [Depends(auth)] if auth else []

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.get('rate_limit_per_minute', 100)} per minute"],
    enabled=settings.get('rate_limit_enabled', True)
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize storage, start maintenance loops, clean up on shutdown"""
    background = []

    try:
        max_retries = 3
        for attempt in range(max_retries):
            try:
                storage.init_db()
                logger.info("Database initialized successfully")
                break
            except Exception as e:
                if attempt == max_retries - 1:
                    logger.critical(f"Failed to initialize database after {max_retries} attempts: {e}")
                    raise
                logger.warning(f"Database init attempt {attempt + 1} failed, retrying in {2**attempt}s...")
                await asyncio.sleep(2 ** attempt)

        Path(settings.get('upload_dir', 'data/uploads')).mkdir(parents=True, exist_ok=True)

        logger.info(
            f"Application {settings.get('app_name')} v{settings.get('version')} "
            f"started in {settings.get('environment')} mode"
        )

        background.append(asyncio.create_task(run_audit_cleanup()))
        background.append(asyncio.create_task(run_cache_cleanup()))

    except Exception as e:
        logger.critical(f"Startup failed: {e}")
        raise

    yield

    logger.info("Application shutting down gracefully...")

    for task in background:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("Background task cancelled")

    try:
        cache_manager.close()
    except Exception as e:
        logger.error(f"Error closing cache manager: {e}")

    try:
        storage.close()
    except Exception as e:
        logger.error(f"Error closing storage: {e}")

    logger.info("Shutdown complete")


async def run_audit_cleanup():
    """Drop audit rows older than the retention period"""
    while True:
        await asyncio.sleep(settings.get('cleanup_interval_hours', 24) * 3600)
        try:
            deleted = storage.cleanup_old_audit_logs()
            logger.info(f"Audit cleanup removed {deleted} rows")
        except Exception as e:
            logger.error(f"Audit cleanup failed: {e}", exc_info=True)


async def run_cache_cleanup():
    """Run periodic cache cleanup"""
    while True:
        await asyncio.sleep(3600)
        try:
            cache_manager.clear_expired()
        except Exception as e:
            logger.error(f"Cache cleanup failed: {e}")


app = FastAPI(
    title=settings.get('app_name'),
    version=settings.get('version'),
    lifespan=lifespan,
    docs_url="/api/docs" if settings.get('debug') else None,
    redoc_url="/api/redoc" if settings.get('debug') else None,
    openapi_url="/openapi.json" if settings.get('debug') else None
)

if settings.get('enable_request_id', True):
    app.add_middleware(RequestIDMiddleware)
app.add_middleware(AuditLoggingMiddleware, storage=storage)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get('cors_origins', []),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Process-Time"]
)
app.add_middleware(GZipMiddleware, minimum_size=1000)
if settings.get('environment') == "production":
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=settings.get('allowed_hosts', ["localhost", "127.0.0.1"])
    )

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Request/Response Models
class DocumentCreateRequest(BaseModel):
    name: Optional[str] = None
    mimeType: Optional[str] = None
    sizeBytes: Optional[int] = None


class RankedSearchRequest(BaseModel):
    q: Optional[str] = None
    k: Optional[int] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    environment: str
    services: Dict[str, str]


def create_error_response(status_code: int, message: str, request_id: str = None) -> JSONResponse:
    """Create standardized error response"""
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "code": status_code, "request_id": request_id}
    )


def parse_int_param(value: Optional[str]) -> Optional[int]:
    """Lenient integer query parameter; unparseable values fall back to the default"""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


# API Routes
@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Health check endpoint with database and cache checks"""
    services = {}

    try:
        services["database"] = "healthy" if storage.check_connection() else "unhealthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        services["database"] = "error"

    cache_stats = cache_manager.get_stats()
    if cache_stats['backend'] == "memory":
        services["cache"] = "memory-only"
    elif cache_stats.get('redis_available'):
        services["cache"] = "redis"
    else:
        services["cache"] = "bypassed"

    overall_status = "healthy"
    if any(s in ["unhealthy", "error"] for s in services.values()):
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.utcnow().isoformat(),
        services=services
    )


@app.get("/metrics", tags=["System"])
async def metrics():
    """Prometheus metrics endpoint"""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="not found")

    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


@app.get("/stats", tags=["System"], dependencies=auth_dependencies)
async def get_statistics():
    """Document and text totals, plus cache state outside production"""
    stats = storage.get_statistics()
    if settings.environment != "production":
        stats["cache"] = cache_manager.get_stats()
    return stats


@app.get("/api/audit", tags=["System"], dependencies=auth_dependencies)
@limiter.limit("30 per minute")
async def list_audit_logs(request: Request, action: Optional[str] = None,
                          userId: Optional[str] = None, limit: Optional[str] = None):
    """Most recent audit entries, optionally filtered by action or user"""
    if not settings.enable_audit_log:
        raise HTTPException(status_code=404, detail="not found")

    limit = min(max(parse_int_param(limit) or 100, 1), 1000)
    entries = storage.get_audit_logs(user_id=userId, action=action, limit=limit)
    return [
        {
            "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
            "requestId": entry.request_id,
            "userId": entry.user_id,
            "action": entry.action,
            "resourceType": entry.resource_type,
            "resourceId": entry.resource_id,
            "statusCode": entry.status_code,
            "errorMessage": entry.error_message,
        }
        for entry in entries
    ]


@app.get("/api/documents", tags=["Documents"], dependencies=auth_dependencies)
@limiter.limit(f"{settings.get('rate_limit_per_minute', 100)} per minute")
@track_request("GET", "/api/documents")
async def list_documents(request: Request):
    return [document.to_dict() for document in service.list_documents()]


@app.post("/api/documents", status_code=status.HTTP_201_CREATED, tags=["Documents"],
          dependencies=auth_dependencies)
@limiter.limit(f"{settings.get('rate_limit_per_minute', 100)} per minute")
@track_request("POST", "/api/documents")
async def create_document(payload: DocumentCreateRequest, request: Request):
    document = service.create_document(payload.name, payload.mimeType, payload.sizeBytes)
    return document.to_dict()


# Declared before /api/documents/{document_id} so "search" is not taken as an id
@app.get("/api/documents/search", tags=["Search"], dependencies=auth_dependencies)
@limiter.limit(f"{settings.get('rate_limit_per_minute', 100)} per minute")
@track_request("GET", "/api/documents/search")
async def search_documents(request: Request, q: Optional[str] = None,
                           limit: Optional[str] = None, offset: Optional[str] = None):
    """Occurrence search across every document"""
    hits = service.search(q, parse_int_param(limit), parse_int_param(offset))
    search_hits.labels("occurrence").observe(len(hits))
    return [hit.to_dict() for hit in hits]


@app.get("/api/documents/{document_id}", tags=["Documents"], dependencies=auth_dependencies)
@limiter.limit(f"{settings.get('rate_limit_per_minute', 100)} per minute")
@track_request("GET", "/api/documents/{id}")
async def get_document(document_id: str, request: Request):
    """Document metadata with its current text (null when it has none)"""
    document = service.get_document(document_id)
    try:
        text_body = service.get_text(document_id)
    except ConflictError:
        text_body = None

    result = document.to_dict()
    result["text"] = text_body
    return result


@app.patch("/api/documents/{document_id}", tags=["Documents"], dependencies=auth_dependencies)
@limiter.limit("30 per minute")
@track_request("PATCH", "/api/documents/{id}")
async def replace_ranges(document_id: str, request: Request):
    """
    Apply a batch of range replacements

    Body: ``{"changes": [{"operation": "replace", "range": {"start", "end"}, "text"}],
    "expectedVersion": optional int}``
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    result = service.replace(document_id, body.get("changes"), body.get("expectedVersion"))
    return result.to_dict()


@app.delete("/api/documents/{document_id}", tags=["Documents"], dependencies=auth_dependencies)
@limiter.limit("30 per minute")
@track_request("DELETE", "/api/documents/{id}")
async def delete_document(document_id: str, request: Request):
    document = service.delete_document(document_id)
    return {"message": "Document deleted successfully", "id": document.id}


@app.get("/api/documents/{document_id}/search", tags=["Search"], dependencies=auth_dependencies)
@limiter.limit(f"{settings.get('rate_limit_per_minute', 100)} per minute")
@track_request("GET", "/api/documents/{id}/search")
async def search_document(document_id: str, request: Request, q: Optional[str] = None,
                          limit: Optional[str] = None, offset: Optional[str] = None):
    """Occurrence search within one document"""
    hits = service.search(q, parse_int_param(limit), parse_int_param(offset), document_id)
    search_hits.labels("occurrence").observe(len(hits))
    return [hit.to_dict() for hit in hits]


@app.post("/api/search", tags=["Search"], dependencies=auth_dependencies)
@limiter.limit(f"{settings.get('rate_limit_per_minute', 100)} per minute")
@track_request("POST", "/api/search")
async def ranked_search(payload: RankedSearchRequest, request: Request):
    """Top-k documents ranked by occurrence count"""
    ranked = service.rank(payload.q, payload.k)
    search_hits.labels("ranked").observe(len(ranked))
    return [item.to_dict() for item in ranked]


@app.post("/api/upload", status_code=status.HTTP_201_CREATED, tags=["Documents"],
          dependencies=auth_dependencies)
@limiter.limit("10 per minute")
@track_request("POST", "/api/upload")
async def upload_document(request: Request, file: UploadFile = File(...)):
    """Upload a text or PDF file; its text becomes searchable and editable"""
    data = await file.read()
    document = service.upload(file.filename, file.content_type, data)
    return document.to_dict()


# Error handlers
@app.exception_handler(DocumentError)
async def document_error_handler(request: Request, exc: DocumentError):
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error(f"Document error in request {request_id}: {exc}")
    else:
        logger.info(f"Request {request_id} rejected ({exc.status_code}): {exc}")
    return create_error_response(exc.status_code, exc.message, request_id)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", None)
    details = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    )
    logger.warning(f"Validation error in request {request_id}: {details}")
    return create_error_response(status.HTTP_400_BAD_REQUEST, details or "invalid request", request_id)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return create_error_response(
        exc.status_code, str(exc.detail), getattr(request.state, "request_id", None)
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(f"Unhandled exception in request {request_id}: {str(exc)}",
                 exc_info=settings.debug)

    if settings.environment == "production":
        storage.log_audit(
            action="error",
            request_id=request_id,
            error_message="Internal server error",
            metadata={"path": str(request.url.path)}
        )

    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        str(exc) if settings.debug else "An unexpected error occurred",
        request_id
    )


if __name__ == "__main__":
    import uvicorn

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["default"],
        },
    }

    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        workers=settings.workers if settings.environment == "production" else 1,
        log_config=log_config,
        reload=(settings.environment == "development"),
    )
