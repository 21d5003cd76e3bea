import logging

from fastapi import APIRouter, Depends

from packages.db import DATABASE_ERRORS
from ..deps import get_orchestrator
from ..schemas import HealthResponse


router = APIRouter()
logger = logging.getLogger("runsync.api")


@router.get("/health", response_model=HealthResponse)
def health(orchestrator=Depends(get_orchestrator)):
    try:
        active = orchestrator.store.count_active()
    except DATABASE_ERRORS as exc:
        logger.warning("Health check could not reach the database: %s", type(exc).__name__)
        return {"status": "degraded", "db": "unavailable", "active_sessions": None}
    return {"status": "ok", "db": "ok", "active_sessions": active}
