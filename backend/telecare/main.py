import secrets
import time

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from telecare.config import get_settings
from telecare.database import close_db, init_db, ping_db
from telecare.errors import ApiError
from telecare.rate_limit import limiter
from telecare.responses import error_body
from telecare.utils.email import get_email_gateway
from telecare.utils.firebase import init_firebase
from telecare.utils.logger import get_logger

logger = get_logger("main")
settings = get_settings()

# Routers
from telecare.routers import notifications as notifications_router
from telecare.routers import users as users_router

API_PREFIX = "/api/v1"

app = FastAPI(
    title="Telecare API",
    debug=settings.APP_DEBUG,
)

app.state.limiter = limiter

# Cookies carry the session, so origins must be explicit for credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or [settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(users_router.router, prefix=API_PREFIX)
app.include_router(notifications_router.router, prefix=API_PREFIX)


# Error handlers
@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{exc.kind} {exc.status_code}: {exc.message} - Path: {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.status_code, exc.message, exc.errors),
        headers=exc.headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code}: {exc.detail} - Path: {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.status_code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()} - Path: {request.url.path}")
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(status.HTTP_400_BAD_REQUEST, "Validation failed", errors),
    )


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning(f"Duplicate key: {exc} - Path: {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=error_body(status.HTTP_409_CONFLICT, "Resource already exists"),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded ({exc.detail}) - Path: {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_body(status.HTTP_429_TOO_MANY_REQUESTS, "Too many requests, please try again later"),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"),
    )


# Middleware Logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    request_id = f"REQ-{int(start_time * 1000)}-{secrets.token_hex(4)}"
    request.state.request_id = request_id

    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{process_time * 1000:.1f}ms"

    principal = getattr(request.state, "principal", None)
    logger.info(
        f"{request_id} {request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.3f}s - "
        f"User: {principal.user_id if principal else 'anonymous'}"
    )
    return response


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    if not await ping_db():
        raise HTTPException(status_code=503, detail="Database not ready")
    return {"status": "ok", "database": "up"}


# Global scheduler instance
scheduler = None


@app.on_event("startup")
async def on_startup():
    from apscheduler.schedulers.asyncio import AsyncIOScheduler
    from telecare.services.notification_jobs import (
        deliver_scheduled_notifications,
        retry_failed_notifications,
    )

    global scheduler

    logger.info("Starting application...")
    await init_db()
    logger.info("Database initialized")
    await get_email_gateway().init()
    if init_firebase():
        logger.info("Firebase messaging ready")

    try:
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            deliver_scheduled_notifications,
            trigger="interval",
            seconds=settings.NOTIFICATION_JOB_INTERVAL_SECONDS,
            id="deliver_scheduled_notifications",
            replace_existing=True,
        )
        scheduler.add_job(
            retry_failed_notifications,
            trigger="interval",
            seconds=settings.NOTIFICATION_JOB_INTERVAL_SECONDS,
            id="retry_failed_notifications",
            replace_existing=True,
        )
        scheduler.start()
        logger.info("Notification scheduler started")
    except Exception as e:
        logger.error(f"Failed to start notification scheduler: {e}")


@app.on_event("shutdown")
async def on_shutdown():
    global scheduler
    if scheduler:
        try:
            scheduler.shutdown()
            logger.info("Notification scheduler stopped")
        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}")
    await get_email_gateway().close()
    close_db()
    logger.info("Shutting down application...")
