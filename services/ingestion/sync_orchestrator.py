"""Chunked, resumable Strava sync.

One call to :meth:`SyncOrchestrator.run_chunk` claims the session, pulls one
page, enriches and stores it, then writes the new cursor and counters before
releasing the claim. Nothing is kept in memory between chunks, so the next
chunk may run in a different process.
"""

from __future__ import annotations

import logging
import math
import random
import time
from functools import partial
from typing import Callable, Optional

from packages import db
from packages.config import SyncSettings, load_settings
from packages.logging_utils import log_event
from packages.metrics import inc, timed
from packages.request_context import sync_session_context
from packages.sync_state import (
    Progress,
    SessionStatus,
    SessionStore,
    SyncCursor,
    SyncSession,
    SyncType,
)

from .credentials import CredentialManager
from .errors import (
    ActiveSessionExists,
    AuthError,
    InternalError,
    InvalidRequest,
    InvalidSessionState,
    InvalidWindow,
    PersistenceError,
    SessionLocked,
    SessionNotFound,
    SyncError,
    TokenRejected,
)
from .run_store import RecordPersister
from .strava_api_import import ActivityFetcher, FetchedPage, parse_iso_to_epoch
from .weather_api_import import EnrichmentStage


logger = logging.getLogger("runsync.sync")

ACTIONS = ("start", "resume", "cancel", "status")


def _backoff_seconds(attempt: int, base: float, cap: float) -> float:
    delay = base * (2 ** max(attempt - 1, 0))
    jitter = random.uniform(0.8, 1.2)
    return min(delay * jitter, cap)


def _parse_bound(value, name: str) -> int:
    if isinstance(value, bool):
        raise InvalidWindow(f"window.{name} must be epoch seconds or an ISO-8601 timestamp")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise InvalidWindow(f"window.{name} must be a finite timestamp")
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        epoch = parse_iso_to_epoch(text)
        if epoch is not None:
            return epoch
    raise InvalidWindow(f"window.{name} must be epoch seconds or an ISO-8601 timestamp")


def session_payload(session: SyncSession) -> dict:
    """Shape a session as the trigger response."""
    payload = {
        "sessionId": session.id,
        "status": session.status,
        "progress": session.progress.to_dict(),
        "nextCursor": session.next_cursor,
    }
    if session.status == SessionStatus.FAILED:
        payload["error"] = {
            "stage": session.failed_stage,
            "code": session.error_code,
            "message": session.error_message,
        }
    return payload


class SyncOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        credentials: CredentialManager,
        fetcher: ActivityFetcher,
        enricher: EnrichmentStage,
        persister: RecordPersister,
        settings: SyncSettings = SyncSettings(),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.credentials = credentials
        self.fetcher = fetcher
        self.enricher = enricher
        self.persister = persister
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    # Trigger surface

    def trigger(self, request: dict) -> dict:
        action = request.get("action")
        if action not in ACTIONS:
            raise InvalidRequest(f"action must be one of {', '.join(ACTIONS)}")
        raw_user = request.get("userId")
        try:
            user_id = int(raw_user)
        except (TypeError, ValueError):
            raise InvalidRequest("userId is required") from None
        session_id = request.get("sessionId")

        if action == "start":
            session = self.start(user_id, request.get("window"))
        elif action == "status":
            if session_id:
                session = self.status(session_id, user_id)
            else:
                latest = self.store.history(user_id, limit=1)
                if not latest:
                    raise SessionNotFound("No sync sessions for this user.")
                session = latest[0]
        else:
            if not session_id:
                raise InvalidRequest(f"sessionId is required for {action}")
            if action == "resume":
                session = self.resume(session_id, user_id)
            else:
                session = self.cancel(session_id, user_id)
        return session_payload(session)

    # Operations

    def start(self, user_id: int, window=None) -> SyncSession:
        active = self.store.active_for_user(user_id)
        if active and self.store.fail_if_stalled(
            active.id, self.settings.stalled_after_sec, self.settings.stale_after_sec
        ):
            log_event(logger, "session_stalled", level=logging.WARNING, session_id=active.id, user_id=user_id)
            active = None
        if active:
            raise ActiveSessionExists("A sync is already in progress for this user.", active.id)

        sync_type, cursor = self.resolve_window(user_id, window)
        session = self.store.create(user_id, sync_type, cursor)
        if session is None:
            active = self.store.active_for_user(user_id)
            raise ActiveSessionExists("A sync is already in progress for this user.", active.id if active else "")
        inc(f"sync_sessions_started_total{{type=\"{sync_type}\"}}")
        log_event(
            logger,
            "session_created",
            session_id=session.id,
            user_id=user_id,
            sync_type=sync_type,
            after=cursor.after,
            before=cursor.before,
        )
        return self.run_chunk(session.id)

    def run_chunk(self, session_id: str) -> SyncSession:
        session = self._load(session_id)
        if session.is_terminal:
            return session
        claim = self.store.claim(session_id, self.settings.stale_after_sec)
        if claim is None:
            raise SessionLocked("Another worker is advancing this session.")
        with sync_session_context(session_id):
            return self._advance(session_id, claim)

    def resume(self, session_id: str, user_id: Optional[int] = None) -> SyncSession:
        session = self._load(session_id, user_id)
        if session.status == SessionStatus.COMPLETED:
            return session
        if session.status == SessionStatus.CANCELLED:
            raise InvalidSessionState("A cancelled session cannot be resumed; start a new sync.")
        if session.status != SessionStatus.FAILED:
            return self.run_chunk(session_id)

        active = self.store.active_for_user(session.user_id)
        if active and active.id != session_id:
            raise ActiveSessionExists("Another sync is in progress for this user.", active.id)
        claim = self.store.claim(session_id, self.settings.stale_after_sec, statuses=(SessionStatus.FAILED,))
        if claim is None:
            raise SessionLocked("Another worker is resuming this session.")
        if not self.store.reopen(session_id, claim):
            self.store.release(session_id, claim)
            active = self.store.active_for_user(session.user_id)
            raise ActiveSessionExists("Another sync is in progress for this user.", active.id if active else "")
        with sync_session_context(session_id):
            log_event(
                logger,
                "session_resumed",
                retry_count=session.retry_count + 1,
                page=session.cursor.page if session.cursor else None,
            )
            return self._advance(session_id, claim)

    def cancel(self, session_id: str, user_id: Optional[int] = None) -> SyncSession:
        session = self._load(session_id, user_id)
        if session.is_terminal:
            return session
        self.store.request_cancel(session_id, self.settings.stale_after_sec)
        updated = self._load(session_id)
        with sync_session_context(session_id):
            log_event(logger, "cancel_requested", status=updated.status)
        return updated

    def status(self, session_id: str, user_id: Optional[int] = None) -> SyncSession:
        return self._load(session_id, user_id)

    def history(self, user_id: int, limit: int = 10) -> list[SyncSession]:
        return self.store.history(user_id, limit)

    def cleanup(self, user_id: Optional[int] = None, keep_days: Optional[int] = None) -> int:
        days = self.settings.session_keep_days if keep_days is None else keep_days
        deleted = self.store.cleanup(days, user_id)
        log_event(logger, "sessions_cleaned", user_id=user_id, keep_days=days, deleted=deleted)
        return deleted

    def resumable_sessions(self, limit: int = 50) -> list[SyncSession]:
        return self.store.runnable(self.settings.stale_after_sec, limit)

    def run_until_done(self, session_id: str, max_chunks: Optional[int] = None) -> SyncSession:
        session = self.run_chunk(session_id)
        chunks = 1
        while not session.is_terminal and (max_chunks is None or chunks < max_chunks):
            session = self.run_chunk(session_id)
            chunks += 1
        return session

    def resolve_window(self, user_id: int, window) -> tuple[str, SyncCursor]:
        per_page = self.settings.per_page
        if window is None or window == "all" or window == "full" or window == {}:
            return SyncType.FULL, SyncCursor(page=1, per_page=per_page)
        if window == "incremental":
            window = {"incremental": True}
        if not isinstance(window, dict):
            raise InvalidWindow("window must be 'all', {days}, {after, before} or {incremental: true}")

        if window.get("incremental"):
            latest = parse_iso_to_epoch(self.persister.latest_start(user_id))
            return SyncType.INCREMENTAL, SyncCursor(page=1, per_page=per_page, after=latest)

        if "days" in window:
            days = window["days"]
            if isinstance(days, bool) or not isinstance(days, (int, float)) or not math.isfinite(days) or days <= 0:
                raise InvalidWindow("window.days must be a positive number")
            after = int(self._clock() - days * 86400)
            return SyncType.RELATIVE, SyncCursor(page=1, per_page=per_page, after=after)

        if "after" in window or "before" in window:
            after = _parse_bound(window["after"], "after") if window.get("after") is not None else None
            before = _parse_bound(window["before"], "before") if window.get("before") is not None else None
            if after is not None and before is not None and after >= before:
                raise InvalidWindow("window.after must be earlier than window.before")
            return SyncType.DATE_RANGE, SyncCursor(page=1, per_page=per_page, after=after, before=before)

        raise InvalidWindow("window must be 'all', {days}, {after, before} or {incremental: true}")

    # Chunk internals

    def _load(self, session_id: str, user_id: Optional[int] = None) -> SyncSession:
        session = self.store.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFound("Sync session not found.")
        return session

    def _heartbeat(self, session_id: str, claim: str, status: str) -> None:
        if not self.store.heartbeat(session_id, claim, status):
            raise SessionLocked("Lost the claim on this session.")

    def _advance(self, session_id: str, claim: str) -> SyncSession:
        session = self.store.get(session_id)
        if session.cancel_requested:
            self._finish(session, claim, SessionStatus.CANCELLED, session.cursor, Progress())
            log_event(logger, "session_cancelled", pages=session.pages_processed)
            return self._load(session_id)

        delta = Progress()
        stage = SessionStatus.FETCHING
        started = time.perf_counter()
        log_event(
            logger,
            "chunk_started",
            user_id=session.user_id,
            page=session.cursor.page,
            per_page=session.cursor.per_page,
        )
        try:
            self._heartbeat(session_id, claim, stage)
            with timed("sync_stage_duration_seconds{stage=\"fetching\"}"):
                page = self._fetch_with_retries(session, claim)
            delta.fetched = len(page.items)

            stage = SessionStatus.ENRICHING
            self._heartbeat(session_id, claim, stage)
            with timed("sync_stage_duration_seconds{stage=\"enriching\"}"):
                enriched = self.enricher.enrich_many(page.items)
            delta.enriched = sum(1 for item in enriched if item.is_enriched)
            log_event(logger, "page_enriched", fetched=delta.fetched, enriched=delta.enriched)

            stage = SessionStatus.PERSISTING
            self._heartbeat(session_id, claim, stage)
            with timed("sync_stage_duration_seconds{stage=\"persisting\"}"):
                result = self.persister.persist(session.user_id, enriched, session_id)
            delta.saved, delta.skipped, delta.failed = result.saved, result.skipped, result.failed
            log_event(
                logger,
                "page_persisted",
                saved=result.saved,
                skipped=result.skipped,
                failed=result.failed,
                updated=result.updated,
            )
        except SessionLocked:
            raise
        except PersistenceError as exc:
            if exc.result is not None:
                delta.saved, delta.skipped, delta.failed = exc.result.saved, exc.result.skipped, exc.result.failed
            return self._fail(session, claim, stage, exc, delta)
        except SyncError as exc:
            return self._fail(session, claim, stage, exc, delta)
        except Exception:
            logger.exception("Unexpected error while %s", stage)
            return self._fail(session, claim, stage, InternalError(f"Unexpected error while {stage}."), delta)

        if page.is_last_page:
            status, cursor = SessionStatus.COMPLETED, None
        else:
            status, cursor = SessionStatus.FETCHING, session.cursor.next_page()
            current = self.store.get(session_id)
            if current is not None and current.cancel_requested:
                status = SessionStatus.CANCELLED

        self._finish(session, claim, status, cursor, delta, pages=1)
        inc(f"sync_chunks_total{{status=\"{status}\"}}")
        for outcome in ("saved", "skipped", "failed"):
            inc(f"sync_records_total{{outcome=\"{outcome}\"}}", getattr(delta, outcome))
        log_event(
            logger,
            "chunk_finished",
            status=status,
            page=session.cursor.page,
            next_page=cursor.page if cursor else None,
            duration_ms=(time.perf_counter() - started) * 1000,
            **delta.to_dict(),
        )
        return self._load(session_id)

    def _finish(self, session: SyncSession, claim: str, status: str, cursor, delta: Progress, pages: int = 0, **error) -> None:
        if not self.store.finish_chunk(session.id, claim, status, cursor, delta, pages=pages, **error):
            raise SessionLocked("Lost the claim on this session before the chunk was recorded.")

    def _fail(self, session: SyncSession, claim: str, stage: str, exc: SyncError, delta: Progress) -> SyncSession:
        # The page is replayed on resume, so its partial counts stay out of the totals.
        self._finish(
            session,
            claim,
            SessionStatus.FAILED,
            session.cursor,
            Progress(),
            failed_stage=stage,
            error_code=exc.code,
            error_message=exc.summary(),
        )
        inc(f"sync_chunks_total{{status=\"{SessionStatus.FAILED}\"}}")
        log_event(
            logger,
            "chunk_failed",
            level=logging.WARNING,
            stage=stage,
            code=exc.code,
            upstream_status=exc.status,
            page=session.cursor.page,
            **delta.to_dict(),
        )
        return self._load(session.id)

    def _fetch_with_retries(self, session: SyncSession, claim: str) -> FetchedPage:
        # force_refresh stays set until a forced refresh has actually returned a token.
        force_refresh = False
        refreshed = False
        failures = 0
        while True:
            try:
                token = self.credentials.get_valid_token(session.user_id, force_refresh=force_refresh)
                if force_refresh:
                    force_refresh = False
                    refreshed = True
                return self.fetcher.fetch_page(token, session.cursor)
            except TokenRejected as exc:
                if refreshed:
                    raise AuthError(
                        "Strava rejected a freshly refreshed token; reconnect required.",
                        status=exc.status,
                    ) from None
                force_refresh = True
                inc("sync_token_rejections_total")
                logger.info("Access token rejected; refreshing once and retrying")
            except SyncError as exc:
                failures += 1
                if not exc.retryable or failures > self.settings.max_retries:
                    raise
                delay = _backoff_seconds(failures, self.settings.backoff_base_sec, self.settings.backoff_max_sec)
                inc(f"sync_upstream_retries_total{{code=\"{exc.code}\"}}")
                logger.warning(
                    "Upstream %s (status=%s); retry %s/%s in %.1fs",
                    exc.code,
                    exc.status,
                    failures,
                    self.settings.max_retries,
                    delay,
                )
                self._sleep(delay)
                self._heartbeat(session.id, claim, SessionStatus.FETCHING)


def build_orchestrator(settings: Optional[SyncSettings] = None) -> SyncOrchestrator:
    settings = settings or load_settings()
    connect = partial(db.connect, settings.db_url, settings.db_path)
    store = SessionStore(connect)
    credentials = CredentialManager(
        connect,
        settings.strava_client_id,
        settings.strava_client_secret,
        token_url=settings.strava_token_url,
        refresh_margin=settings.token_refresh_margin_sec,
        timeout=settings.http_timeout_sec,
    )
    fetcher = ActivityFetcher(
        base_url=settings.strava_api_base,
        activity_types=settings.activity_types,
        timeout=settings.http_timeout_sec,
    )
    enricher = EnrichmentStage(
        settings.weather_api_key,
        base_url=settings.weather_api_base,
        max_workers=settings.enrich_workers,
        timeout=settings.http_timeout_sec,
    )
    persister = RecordPersister(connect, on_conflict=settings.on_conflict)
    return SyncOrchestrator(store, credentials, fetcher, enricher, persister, settings)
