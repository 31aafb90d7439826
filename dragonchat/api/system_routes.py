from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dragonchat.deps import get_db
from dragonchat.logging_config import logger

SERVICE_NAME = "dragon-backend"

router = APIRouter(tags=["system"])


@router.get("/api/health")
async def health_endpoint(db: Session = Depends(get_db)) -> dict:
    """
    Liveness plus a database round-trip; reports ``ok`` even when the
    database is down so that the process is not restarted for it.
    """
    try:
        db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as exc:
        logger.warning("Health check database probe failed: %s", exc)
        database = "disconnected"
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "database": database,
    }


__all__ = ["router"]
