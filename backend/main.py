import logging
import time
import traceback

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import settings
from utils.logging_utils import configure_logging

configure_logging(settings.LOG_LEVEL)
settings.validate_security_configuration()

from ai.vision_analyzer import VisionAnalyzer, get_vision_analyzer  # noqa: E402
from api.billing import router as billing_router  # noqa: E402
from api.meals import router as meals_router  # noqa: E402
from api.uploads import router as uploads_router  # noqa: E402
from auth.routes import router as auth_router  # noqa: E402
from db.database import get_db, init_db  # noqa: E402
from services.request_context import (  # noqa: E402
    clear_request_scope,
    current_request_id,
    resolve_request_id,
    start_request_scope,
)
from utils.errors import AppError  # noqa: E402

logger = logging.getLogger(__name__)

# Create all tables
init_db()

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

_HTTP_ERROR_CODES = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "file_too_large",
    415: "unsupported_file_type",
    429: "rate_limited",
}


def _error_response(status_code: int, body: dict, headers: dict | None = None) -> JSONResponse:
    body = {**body, "requestId": current_request_id()}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return _error_response(exc.status_code, exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error_response(
        exc.status_code,
        {"error": code, "message": message},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return _error_response(
        400,
        {"error": "validation_error", "message": "Invalid request", "details": {"errors": errors}},
    )


@app.middleware("http")
async def request_correlation_middleware(request: Request, call_next):
    request_id = resolve_request_id(
        request.headers.get("x-request-id"),
        request.headers.get("x-correlation-id"),
    )
    start_request_scope(request_id, request.url.path, request.method)
    started = time.perf_counter()
    try:
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            body = {"error": "internal_error", "message": "Internal server error"}
            if settings.EXPOSE_ERROR_DETAILS:
                body["details"] = {
                    "exception": f"{type(exc).__name__}: {exc}",
                    "traceback": traceback.format_exc(),
                }
            response = _error_response(500, body)
        response.headers["X-Request-ID"] = request_id
        duration_ms = (time.perf_counter() - started) * 1000.0
        logger.info(f"{request.method} {request.url.path} {response.status_code} {duration_ms:.1f}ms")
        return response
    finally:
        clear_request_scope()


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.SECURITY_HEADERS_ENABLED:
        return response
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    response.headers["Content-Security-Policy"] = settings.SECURITY_CSP
    return response


# Routers
app.include_router(auth_router, prefix="/api")
app.include_router(uploads_router, prefix="/api")
app.include_router(meals_router, prefix="/api")
app.include_router(billing_router, prefix="/api")


@app.get("/api/health")
async def health_check(
    deep: bool = False,
    db: Session = Depends(get_db),
    analyzer: VisionAnalyzer = Depends(get_vision_analyzer),
):
    checks: dict = {}
    healthy = True
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as exc:
        logger.error(f"Health check database failure: {exc}")
        checks["database"] = {"status": "unhealthy"}
        healthy = False
    if deep:
        checks["ai"] = await analyzer.check_health()
        if checks["ai"].get("status") == "unhealthy":
            healthy = False

    body = {"status": "ok" if healthy else "degraded", "app": settings.APP_NAME, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)
