from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class ErrorDetail(BaseModel):
    code: str
    message: str
    request_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str
    db: str
    active_sessions: Optional[int] = None


class SyncWindow(BaseModel):
    days: Optional[float] = Field(default=None, gt=0)
    after: Optional[Union[int, str]] = None
    before: Optional[Union[int, str]] = None
    incremental: Optional[bool] = None


class TriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["start", "resume", "cancel", "status"]
    user_id: Optional[int] = Field(default=None, alias="userId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    window: Optional[Union[Literal["all", "full", "incremental"], SyncWindow]] = None

    def to_trigger(self, user_id: int) -> dict:
        window = self.window
        if isinstance(window, SyncWindow):
            window = window.model_dump(exclude_none=True)
        return {
            "action": self.action,
            "userId": user_id,
            "sessionId": self.session_id,
            "window": window,
        }


class SyncProgress(BaseModel):
    fetched: int = 0
    enriched: int = 0
    saved: int = 0
    skipped: int = 0
    failed: int = 0


class SyncFailure(BaseModel):
    stage: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None


class TriggerResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    status: str
    progress: SyncProgress
    next_cursor: Optional[Dict[str, int]] = Field(default=None, alias="nextCursor")
    error: Optional[SyncFailure] = None


class SessionEntry(BaseModel):
    id: str
    sync_type: str
    status: str
    progress: SyncProgress
    cursor: Optional[Dict[str, int]] = None
    pages_processed: int = 0
    retry_count: int = 0
    failed_stage: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class SyncHistoryResponse(BaseModel):
    sessions: List[SessionEntry] = Field(default_factory=list)


class CleanupRequest(BaseModel):
    keep_days: Optional[int] = Field(default=None, ge=0)


class CleanupResponse(BaseModel):
    deleted: int
