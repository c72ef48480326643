from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    encryption_status = (
        "ok" if getattr(request.app.state, "field_encryption", None) is not None else "unavailable"
    )
    backup_status = (
        "ok" if getattr(request.app.state, "backup_service", None) is not None else "unavailable"
    )

    is_healthy = db_status == "ok" and encryption_status == "ok"
    return {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": "agency-backend",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "encryption": encryption_status,
            "backup": backup_status,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "agency-backend",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "agency-backend",
    }
