from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from packages.db import INTEGRITY_ERRORS


class SessionStatus:
    PENDING = "pending"
    FETCHING = "fetching"
    ENRICHING = "enriching"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (
    SessionStatus.PENDING,
    SessionStatus.FETCHING,
    SessionStatus.ENRICHING,
    SessionStatus.PERSISTING,
)
TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


class SyncType:
    FULL = "full"
    RELATIVE = "relative"
    DATE_RANGE = "date_range"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class SyncCursor:
    page: int = 1
    per_page: int = 50
    after: Optional[int] = None
    before: Optional[int] = None

    def to_params(self) -> dict:
        params = {"page": self.page, "per_page": self.per_page}
        if self.after is not None:
            params["after"] = self.after
        if self.before is not None:
            params["before"] = self.before
        return params

    def next_page(self) -> "SyncCursor":
        return replace(self, page=self.page + 1)

    def to_dict(self) -> dict:
        data = {"page": self.page, "per_page": self.per_page}
        if self.after is not None:
            data["after"] = self.after
        if self.before is not None:
            data["before"] = self.before
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SyncCursor":
        return cls(
            page=int(data.get("page", 1)),
            per_page=int(data.get("per_page", 50)),
            after=int(data["after"]) if data.get("after") is not None else None,
            before=int(data["before"]) if data.get("before") is not None else None,
        )


@dataclass
class Progress:
    fetched: int = 0
    enriched: int = 0
    saved: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "enriched": self.enriched,
            "saved": self.saved,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class SyncSession:
    id: str
    user_id: int
    sync_type: str
    status: str
    cursor: Optional[SyncCursor]
    progress: Progress = field(default_factory=Progress)
    pages_processed: int = 0
    retry_count: int = 0
    failed_stage: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    cancel_requested: bool = False
    claim_token: Optional[str] = None
    claimed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def next_cursor(self) -> Optional[dict]:
        if self.status == SessionStatus.COMPLETED or self.cursor is None:
            return None
        return self.cursor.to_dict()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "sync_type": self.sync_type,
            "status": self.status,
            "cursor": self.next_cursor,
            "progress": self.progress.to_dict(),
            "pages_processed": self.pages_processed,
            "retry_count": self.retry_count,
            "failed_stage": self.failed_stage,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }


SESSION_COLUMNS = """
    id, user_id, sync_type, status, cursor_json,
    fetched, enriched, saved, skipped, failed,
    pages_processed, retry_count, failed_stage, error_code, error_message,
    cancel_requested, claim_token, claimed_at, created_at, updated_at, completed_at
"""


def _to_iso(value: Optional[object]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _row_to_session(row) -> SyncSession:
    cursor = json.loads(row[4]) if row[4] else None
    return SyncSession(
        id=row[0],
        user_id=int(row[1]),
        sync_type=row[2],
        status=row[3],
        cursor=SyncCursor.from_dict(cursor) if cursor else None,
        progress=Progress(row[5], row[6], row[7], row[8], row[9]),
        pages_processed=row[10],
        retry_count=row[11],
        failed_stage=row[12],
        error_code=row[13],
        error_message=row[14],
        cancel_requested=bool(row[15]),
        claim_token=row[16],
        claimed_at=_to_iso(row[17]),
        created_at=_to_iso(row[18]),
        updated_at=_to_iso(row[19]),
        completed_at=_to_iso(row[20]),
    )


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


class SessionStore:
    """Durable sync session rows plus the claim lease that serialises chunks.

    A claim is a token written by one conditional UPDATE. Every write made
    while advancing a session is guarded by that token, so a worker whose
    lease went stale and was taken over cannot overwrite the new owner.
    """

    def __init__(self, connect: Callable, clock: Callable[[], float] = time.time):
        self._connect = connect
        self._clock = clock

    def now_iso(self, offset_sec: float = 0) -> str:
        moment = datetime.fromtimestamp(self._clock(), timezone.utc) + timedelta(seconds=offset_sec)
        return moment.isoformat(timespec="microseconds")

    def create(self, user_id: int, sync_type: str, cursor: SyncCursor) -> Optional[SyncSession]:
        """Insert a pending session; ``None`` if the user already has an active one."""
        now = self.now_iso()
        session = SyncSession(
            id=uuid.uuid4().hex,
            user_id=user_id,
            sync_type=sync_type,
            status=SessionStatus.PENDING,
            cursor=cursor,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_sessions(id, user_id, sync_type, status, cursor_json, created_at, updated_at)
                    VALUES(?, ?, ?, ?, ?, ?, ?)
                    """,
                    (session.id, user_id, sync_type, session.status, json.dumps(cursor.to_dict()), now, now),
                )
        except INTEGRITY_ERRORS:
            return None
        return session

    def get(self, session_id: str) -> Optional[SyncSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {SESSION_COLUMNS} FROM sync_sessions WHERE id=?",
                (session_id,),
            ).fetchone()
        return _row_to_session(row) if row else None

    def active_for_user(self, user_id: int) -> Optional[SyncSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {SESSION_COLUMNS} FROM sync_sessions
                WHERE user_id=? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, *ACTIVE_STATUSES),
            ).fetchone()
        return _row_to_session(row) if row else None

    def claim(self, session_id: str, stale_after_sec: int, statuses=ACTIVE_STATUSES) -> Optional[str]:
        """Take the lease if it is free or stale. Returns the claim token or ``None``."""
        token = uuid.uuid4().hex
        now = self.now_iso()
        stale_before = self.now_iso(-stale_after_sec)
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE sync_sessions
                SET claim_token=?, claimed_at=?, updated_at=?
                WHERE id=?
                  AND status IN ({_placeholders(statuses)})
                  AND (claim_token IS NULL OR claimed_at < ?)
                """,
                (token, now, now, session_id, *statuses, stale_before),
            )
            claimed = cur.rowcount == 1
        return token if claimed else None

    def heartbeat(self, session_id: str, token: str, status: str) -> bool:
        """Record a stage transition and refresh the lease."""
        now = self.now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sync_sessions
                SET status=?, claimed_at=?, updated_at=?
                WHERE id=? AND claim_token=?
                """,
                (status, now, now, session_id, token),
            )
            return cur.rowcount == 1

    def reopen(self, session_id: str, token: str) -> bool:
        """Move a claimed failed session back to fetching for another attempt."""
        now = self.now_iso()
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE sync_sessions
                    SET status=?, failed_stage=NULL, error_code=NULL, error_message=NULL,
                        retry_count=retry_count + 1, completed_at=NULL, claimed_at=?, updated_at=?
                    WHERE id=? AND claim_token=? AND status=?
                    """,
                    (SessionStatus.FETCHING, now, now, session_id, token, SessionStatus.FAILED),
                )
                return cur.rowcount == 1
        except INTEGRITY_ERRORS:
            return False

    def finish_chunk(
        self,
        session_id: str,
        token: str,
        status: str,
        cursor: Optional[SyncCursor],
        delta: Progress,
        pages: int = 0,
        failed_stage: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Persist the outcome of one chunk and release the lease."""
        now = self.now_iso()
        completed_at = now if status in TERMINAL_STATUSES else None
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE sync_sessions
                SET status=?,
                    cursor_json=?,
                    fetched=fetched + ?,
                    enriched=enriched + ?,
                    saved=saved + ?,
                    skipped=skipped + ?,
                    failed=failed + ?,
                    pages_processed=pages_processed + ?,
                    failed_stage=?,
                    error_code=?,
                    error_message=?,
                    completed_at=?,
                    claim_token=NULL,
                    claimed_at=NULL,
                    updated_at=?
                WHERE id=? AND claim_token=?
                """,
                (
                    status,
                    json.dumps(cursor.to_dict()) if cursor else None,
                    delta.fetched,
                    delta.enriched,
                    delta.saved,
                    delta.skipped,
                    delta.failed,
                    pages,
                    failed_stage,
                    error_code,
                    error_message,
                    completed_at,
                    now,
                    session_id,
                    token,
                ),
            )
            return cur.rowcount == 1

    def release(self, session_id: str, token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE sync_sessions
                SET claim_token=NULL, claimed_at=NULL, updated_at=?
                WHERE id=? AND claim_token=?
                """,
                (self.now_iso(), session_id, token),
            )

    def request_cancel(self, session_id: str, stale_after_sec: int) -> None:
        """Flag the session; cancel it outright when nobody holds the lease."""
        now = self.now_iso()
        stale_before = self.now_iso(-stale_after_sec)
        with self._connect() as conn:
            conn.execute(
                f"""
                UPDATE sync_sessions
                SET cancel_requested=1, updated_at=?
                WHERE id=? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                """,
                (now, session_id, *ACTIVE_STATUSES),
            )
            conn.execute(
                f"""
                UPDATE sync_sessions
                SET status=?, completed_at=?, claim_token=NULL, claimed_at=NULL, updated_at=?
                WHERE id=? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                  AND (claim_token IS NULL OR claimed_at < ?)
                """,
                (SessionStatus.CANCELLED, now, now, session_id, *ACTIVE_STATUSES, stale_before),
            )

    def fail_if_stalled(self, session_id: str, idle_after_sec: int, stale_after_sec: int) -> bool:
        """Fail an unowned active session that has seen no progress for ``idle_after_sec``."""
        now = self.now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE sync_sessions
                SET failed_stage=status, status=?, error_code=?, error_message=?,
                    completed_at=?, claim_token=NULL, claimed_at=NULL, updated_at=?
                WHERE id=? AND status IN ({_placeholders(ACTIVE_STATUSES)})
                  AND updated_at < ?
                  AND (claim_token IS NULL OR claimed_at < ?)
                """,
                (
                    SessionStatus.FAILED,
                    "session_stalled",
                    "No progress recorded; superseded by a new sync.",
                    now,
                    now,
                    session_id,
                    *ACTIVE_STATUSES,
                    self.now_iso(-idle_after_sec),
                    self.now_iso(-stale_after_sec),
                ),
            )
            return cur.rowcount == 1

    def history(self, user_id: int, limit: int = 10) -> list[SyncSession]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {SESSION_COLUMNS} FROM sync_sessions
                WHERE user_id=?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def runnable(self, stale_after_sec: int, limit: int = 50) -> list[SyncSession]:
        """Active sessions that nobody holds, oldest activity first."""
        stale_before = self.now_iso(-stale_after_sec)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {SESSION_COLUMNS} FROM sync_sessions
                WHERE status IN ({_placeholders(ACTIVE_STATUSES)})
                  AND (claim_token IS NULL OR claimed_at < ?)
                ORDER BY updated_at ASC
                LIMIT ?
                """,
                (*ACTIVE_STATUSES, stale_before, limit),
            ).fetchall()
        return [_row_to_session(row) for row in rows]

    def cleanup(self, keep_days: int, user_id: Optional[int] = None) -> int:
        cutoff = self.now_iso(-keep_days * 86400)
        sql = f"""
            DELETE FROM sync_sessions
            WHERE status IN ({_placeholders(TERMINAL_STATUSES)}) AND created_at < ?
        """
        params: list = [*TERMINAL_STATUSES, cutoff]
        if user_id is not None:
            sql += " AND user_id=?"
            params.append(user_id)
        with self._connect() as conn:
            return conn.execute(sql, params).rowcount

    def count_active(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM sync_sessions WHERE status IN ({_placeholders(ACTIVE_STATUSES)})",
                ACTIVE_STATUSES,
            ).fetchone()
        return int(row[0]) if row else 0
