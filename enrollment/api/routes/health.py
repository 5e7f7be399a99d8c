"""
Health API Routes
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from enrollment.api.dependencies import get_app_settings
from enrollment.config import Settings
from enrollment.database import check_database_connection, database_health

router = APIRouter()


@router.get("/health")
async def health_check() -> JSONResponse:
    """Application and database health"""
    db = database_health()
    ok = bool(db.get("ok")) and check_database_connection()
    return JSONResponse(
        status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if ok else "degraded",
            "database": db,
        },
    )


@router.get("/health/integrations")
async def check_integrations(config: Settings = Depends(get_app_settings)) -> dict:
    """Report which external collaborators are configured."""
    checks = {
        "flutterwave": bool(config.flw_secret_key.get_secret_value()),
        "flutterwave_webhook": bool(config.flutterwave_hash.get_secret_value()),
        "email": bool(config.sendgrid_api_key or config.smtp_host),
        "quiz_service": bool(config.quiz_service_url),
    }
    return {
        "integrations": checks,
        "ready": checks["flutterwave"] and checks["flutterwave_webhook"],
        "missing": [k for k, v in checks.items() if not v],
    }
