"""SessionGuard FastAPI application"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text
from pathlib import Path
from typing import Any, Dict, Optional
import logging
import time
import uuid

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

from sessionguard.config import settings
from sessionguard.core.clock import utcnow
from sessionguard.core.database import init_db, SessionLocal
from sessionguard.core.exceptions import BaseAPIException
from sessionguard.api.v1 import auth, users, admin

_log_dir = Path(settings.get_log_file()).parent
_log_dir.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.get_log_file()),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    "sessionguard_http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)
REQUEST_LATENCY = Histogram(
    "sessionguard_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "route"],
)

# Responses under these prefixes carry credentials and must never be cached
_NO_STORE_PREFIXES = ("/api/v1/auth", "/api/v1/users", "/api/v1/admin")

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None
)

app.add_middleware(GZipMiddleware, minimum_size=500)

# Session cookies are credentialed, so origins must be listed explicitly
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", settings.CSRF_HEADER_NAME, "X-Request-ID"],
)


def _route_label(request: Request) -> str:
    # Templated path keeps metric cardinality bounded (/users/{user_id}/summary)
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


@app.middleware("http")
async def security_headers(request: Request, call_next):
    """Tag the request, time it and harden the response headers"""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    headers = response.headers
    headers["X-Request-ID"] = request_id
    headers["X-Content-Type-Options"] = "nosniff"
    headers["X-Frame-Options"] = "DENY"
    headers["Referrer-Policy"] = "same-origin"
    if request.url.path.startswith(_NO_STORE_PREFIXES):
        headers["Cache-Control"] = "no-store"
    if settings.is_production:
        headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"

    route = _route_label(request)
    REQUEST_COUNT.labels(request.method, route, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, route).observe(duration)

    if duration > 1.0:
        logger.warning(
            "Slow request: %s %s took %.2fs request_id=%s",
            request.method,
            route,
            duration,
            request_id,
        )
    return response


def _error_body(request: Request, error: str, **fields: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": error}
    body.update({key: value for key, value in fields.items() if value is not None})
    body["path"] = request.url.path
    body["request_id"] = getattr(request.state, "request_id", None)
    body["timestamp"] = utcnow().isoformat()
    return body


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Render a security denial or a classified fault"""
    kind: Optional[str] = exc.kind.value if exc.kind else None
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "%s %s -> %s (%s): %s",
        request.method,
        request.url.path,
        exc.status_code,
        kind or exc.__class__.__name__,
        exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message, kind=kind, details=exc.details or None),
        headers=exc.headers or None,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    # Field names only; submitted values may contain passwords
    logger.info("Request validation failed on %s: %s", request.url.path, [e["field"] for e in errors])
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(request, "Validation failed", kind="validation_failed", details=errors),
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """Storage faults fail closed: no cookie is issued"""
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, "A database error occurred. Please try again later.", kind="internal_error"),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.critical("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, "An unexpected error occurred.", kind="internal_error"),
    )


def bootstrap_admin() -> None:
    """Create the configured admin account if it does not exist yet"""
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD):
        return

    from sessionguard.services.user_service import user_service

    db = SessionLocal()
    try:
        if user_service.get_user_by_email(db, settings.ADMIN_EMAIL) is None:
            created = user_service.create_user(
                db,
                settings.ADMIN_EMAIL,
                settings.ADMIN_PASSWORD,
                display_name="admin",
                email_verified=True,
            )
            if created:
                logger.info(f"Created admin account {created.id}")
    finally:
        db.close()


@app.on_event("startup")
async def startup_event():
    settings.validate_security_settings()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

    try:
        init_db()
    except Exception:
        logger.exception("Database initialization failed")
        raise

    try:
        bootstrap_admin()
    except SQLAlchemyError:
        logger.exception("Admin bootstrap failed; continuing without it")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"Shutting down {settings.APP_NAME}")


@app.get("/health")
async def health_check():
    """Liveness plus a database round-trip"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = {"ok": True, "error": None}
    except SQLAlchemyError as exc:
        database = {"ok": False, "error": exc.__class__.__name__}
    finally:
        db.close()

    return {
        "status": "healthy" if database["ok"] else "degraded",
        "version": settings.APP_VERSION,
        "timestamp": utcnow().isoformat(),
        "readiness": {"database": database},
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/api/docs" if settings.DEBUG else "disabled"
    }


app.include_router(auth.router, prefix="/api/v1/auth", tags=["Authentication"])
app.include_router(users.router, prefix="/api/v1/users", tags=["Users"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sessionguard.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS
    )
