"""
Enrollment API - FastAPI Application
Payment-gated student registration backend
"""
from contextlib import asynccontextmanager
import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from enrollment.api.routes import health, payments, registrations, subscriptions
from enrollment.config import settings
from enrollment.core.exceptions import AppError
from enrollment.core.logger import configure_logging
from enrollment.database import SessionLocal, init_db
from enrollment.services.expiry_reaper import ExpiryReaper
from enrollment.services.notification_service import NotificationService

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Starting %s...", settings.app_name)

    try:
        init_db()
        logger.info("Database initialized")
    except Exception as e:
        logger.error("Database initialization failed: %s", e)

    reaper = None
    if settings.expiry_sweep_enabled:
        reaper = ExpiryReaper(
            SessionLocal,
            notifier=NotificationService(),
            schedule_cron=settings.expiry_sweep_cron,
        )
        reaper.start()
        app.state.expiry_reaper = reaper
    logger.info("API running on %s environment", settings.app_env)
    yield
    if reaper is not None:
        await reaper.stop()
    logger.info("Shutting down %s...", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Payment-gated student registration API",
    version="1.0.0",
    lifespan=lifespan,
)

# Respect forwarded proto/host so provider redirects keep https.
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


@app.get("/")
async def root() -> dict:
    return {
        "name": settings.app_name,
        "environment": settings.app_env,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


prefix = settings.api_v1_prefix
app.include_router(health.router, prefix=prefix, tags=["Health"])
app.include_router(registrations.router, prefix=f"{prefix}/registrations", tags=["Registrations"])
app.include_router(payments.router, prefix=f"{prefix}/payments", tags=["Payments"])
app.include_router(subscriptions.router, prefix=f"{prefix}/subscriptions", tags=["Subscriptions"])
