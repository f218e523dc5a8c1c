"""Health check."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..dependencies import Config, Database

router = APIRouter(tags=["health"])


@router.get("/up")
def up(db: Database, config: Config):
    """200 when the database answers, 503 otherwise."""
    healthy = db.verify_connection()
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "unavailable",
            "service": config.app_name,
            "version": config.app_version,
            "database": "connected" if healthy else "disconnected",
        },
    )
