from fastapi import APIRouter, Depends, Query

from services.ingestion.sync_orchestrator import session_payload
from ..deps import get_current_user, get_orchestrator, resolve_user_id
from ..schemas import (
    CleanupRequest,
    CleanupResponse,
    SyncHistoryResponse,
    TriggerRequest,
    TriggerResponse,
)


router = APIRouter()


@router.post("/sync", response_model=TriggerResponse)
def trigger_sync(body: TriggerRequest, user=Depends(get_current_user), orchestrator=Depends(get_orchestrator)):
    user_id = resolve_user_id(user, body.user_id)
    return orchestrator.trigger(body.to_trigger(user_id))


@router.get("/sync/history", response_model=SyncHistoryResponse)
def sync_history(
    limit: int = Query(10, ge=1, le=100),
    user_id: int | None = Query(None, alias="userId"),
    user=Depends(get_current_user),
    orchestrator=Depends(get_orchestrator),
):
    sessions = orchestrator.history(resolve_user_id(user, user_id), limit)
    return {"sessions": [session.to_dict() for session in sessions]}


@router.post("/sync/cleanup", response_model=CleanupResponse)
def sync_cleanup(
    body: CleanupRequest | None = None,
    user=Depends(get_current_user),
    orchestrator=Depends(get_orchestrator),
):
    keep_days = body.keep_days if body else None
    return {"deleted": orchestrator.cleanup(user["id"], keep_days)}


@router.get("/sync/{session_id}", response_model=TriggerResponse)
def sync_status(session_id: str, user=Depends(get_current_user), orchestrator=Depends(get_orchestrator)):
    owner = None if user.get("auth_disabled") else user["id"]
    return session_payload(orchestrator.status(session_id, owner))
