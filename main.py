import time
from fastapi import FastAPI, Request, status, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from core.config import settings
from core.exceptions import TokenLifecycleError, CompromisedTokenError, LockTimeoutError
from core.logging_config import setup_logging
from middleware import RequestIDMiddleware, get_request_id, limiter
from routers import auth
from services.session_sweeper import SessionSweeper
from utils.deps import build_services
from utils.logger import get_logger

setup_logging(
    log_level=settings.LOG_LEVEL,
    log_dir=settings.LOG_DIR
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = build_services(settings)
    app.state.services = services

    sweeper = None
    if settings.SESSION_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = SessionSweeper(services.sessions, settings.SESSION_SWEEP_INTERVAL_SECONDS)
        await sweeper.start()

    logger.info("Application startup complete", extra={"event": "startup"})
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        services.close()
        logger.info("Application shutting down", extra={"event": "shutdown"})


app = FastAPI(
    title="Token Rotation Service",
    description="Issues, rotates and revokes access/refresh token pairs",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Log every HTTP request with method, path, status code and duration.
    """
    start_time = time.time()
    response = await call_next(request)
    duration = (time.time() - start_time) * 1000

    client_ip = request.client.host if request.client else "unknown"

    logger.info(
        f'{client_ip} - "{request.method} {request.url.path} HTTP/1.1" {response.status_code}',
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration, 2),
            "client_ip": client_ip
        }
    )

    return response


app.add_middleware(RequestIDMiddleware)


@app.get("/health")
async def health_check():
    logger.debug("Health check requested")
    return {"status": "Healthy"}


@app.exception_handler(TokenLifecycleError)
async def token_error_handler(request: Request, exc: TokenLifecycleError):
    """
    Render every token lifecycle failure as {"detail", "code"} with its status.
    """
    headers = None
    if isinstance(exc, LockTimeoutError):
        headers = {"Retry-After": "1"}

    extra = {
        "path": request.url.path,
        "code": exc.code,
    }
    if isinstance(exc, CompromisedTokenError):
        extra["subject_id"] = exc.subject_id
        extra["revoked_count"] = exc.revoked_count

    if exc.status_code >= 500 and not exc.retryable:
        logger.error(f"Token service failure: {exc.detail}", extra=extra)
    else:
        logger.info(f"Token request rejected: {exc.detail}", extra=extra)

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch all unhandled exceptions, log them with stack trace and return
    a generic 500.
    """
    if isinstance(exc, (HTTPException, RequestValidationError)):
        raise exc

    logger.error(
        f"Unhandled exception: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "request_id": get_request_id(request)
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


app.include_router(auth.router)


app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
