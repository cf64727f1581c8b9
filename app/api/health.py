from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import inspect, text
from app.database import get_db
from app.models.models import Base

router = APIRouter(tags=["health"])

SERVICE_NAME = "workspace-sync-api"


@router.get("/health")
async def health_check():
    """Liveness: the process is up and serving requests."""
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/health/ready")
async def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness: the database answers and every table the sync and sharing
    endpoints write to has been created.
    """
    checks = {"database": "unknown", "schema": "unknown"}

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"

        existing = set(inspect(db.get_bind()).get_table_names())
        missing = sorted(set(Base.metadata.tables) - existing)
        checks["schema"] = "healthy" if not missing else f"missing: {', '.join(missing)}"
    except Exception as e:
        checks["database"] = "unhealthy"
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not_ready", "checks": checks, "error": str(e)}
        )

    if checks["schema"] != "healthy":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not_ready", "checks": checks}
        )

    return {"status": "ready", "checks": checks}
