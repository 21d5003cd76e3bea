import time
from functools import partial
from pathlib import Path

import pytest

from packages import db
from packages.sync_state import Progress, SessionStatus, SessionStore, SyncCursor, SyncType
from tests.fixtures.build_fixture_db import build_fixture_db


class Clock:
    def __init__(self):
        self.now = time.time()

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def store(tmp_path: Path, clock):
    db_path = tmp_path / "fixture.db"
    build_fixture_db(db_path)
    return SessionStore(partial(db.connect, None, db_path), clock=clock)


def test_cursor_params_and_next_page():
    cursor = SyncCursor(page=2, per_page=50, after=1700000000)
    assert cursor.to_params() == {"page": 2, "per_page": 50, "after": 1700000000}
    assert cursor.next_page() == SyncCursor(page=3, per_page=50, after=1700000000)
    assert SyncCursor.from_dict(cursor.to_dict()) == cursor
    assert SyncCursor(page=1, per_page=50).to_dict() == {"page": 1, "per_page": 50}


def test_create_starts_pending_with_zero_counters(store):
    session = store.create(1, SyncType.FULL, SyncCursor(per_page=50))
    loaded = store.get(session.id)
    assert loaded.status == SessionStatus.PENDING
    assert loaded.progress == Progress()
    assert loaded.next_cursor == {"page": 1, "per_page": 50}
    assert loaded.claim_token is None


def test_one_active_session_per_user(store):
    first = store.create(1, SyncType.FULL, SyncCursor())
    assert store.create(1, SyncType.FULL, SyncCursor()) is None
    assert store.create(2, SyncType.FULL, SyncCursor()) is not None
    assert store.active_for_user(1).id == first.id


def test_claim_is_exclusive_until_stale(store, clock):
    session = store.create(1, SyncType.FULL, SyncCursor())
    first = store.claim(session.id, stale_after_sec=900)
    assert first
    assert store.claim(session.id, stale_after_sec=900) is None

    clock.advance(901)
    second = store.claim(session.id, stale_after_sec=900)
    assert second and second != first

    # The old owner can no longer record its chunk.
    assert not store.finish_chunk(session.id, first, SessionStatus.FETCHING, SyncCursor(page=2), Progress(fetched=5))
    assert store.finish_chunk(session.id, second, SessionStatus.FETCHING, SyncCursor(page=2), Progress(fetched=5), pages=1)
    loaded = store.get(session.id)
    assert loaded.progress.fetched == 5
    assert loaded.pages_processed == 1
    assert loaded.claim_token is None


def test_heartbeat_keeps_lease_fresh(store, clock):
    session = store.create(1, SyncType.FULL, SyncCursor())
    token = store.claim(session.id, stale_after_sec=900)
    clock.advance(600)
    assert store.heartbeat(session.id, token, SessionStatus.ENRICHING)
    clock.advance(600)
    assert store.claim(session.id, stale_after_sec=900) is None
    assert store.get(session.id).status == SessionStatus.ENRICHING


def test_finish_chunk_accumulates_counters(store):
    session = store.create(1, SyncType.FULL, SyncCursor())
    for page in (2, 3):
        token = store.claim(session.id, 900)
        store.finish_chunk(session.id, token, SessionStatus.FETCHING, SyncCursor(page=page), Progress(3, 2, 2, 1, 0), pages=1)
    token = store.claim(session.id, 900)
    store.finish_chunk(session.id, token, SessionStatus.COMPLETED, None, Progress(1, 1, 1, 0, 0), pages=1)
    loaded = store.get(session.id)
    assert loaded.progress.to_dict() == {"fetched": 7, "enriched": 5, "saved": 5, "skipped": 2, "failed": 0}
    assert loaded.pages_processed == 3
    assert loaded.next_cursor is None
    assert loaded.completed_at is not None
    assert store.claim(session.id, 900) is None


def test_cancel_unclaimed_session_is_immediate(store):
    session = store.create(1, SyncType.FULL, SyncCursor())
    store.request_cancel(session.id, 900)
    loaded = store.get(session.id)
    assert loaded.status == SessionStatus.CANCELLED
    assert loaded.cancel_requested


def test_cancel_claimed_session_only_sets_flag(store):
    session = store.create(1, SyncType.FULL, SyncCursor())
    token = store.claim(session.id, 900)
    store.request_cancel(session.id, 900)
    loaded = store.get(session.id)
    assert loaded.status == SessionStatus.PENDING
    assert loaded.cancel_requested
    assert loaded.claim_token == token


def test_reopen_failed_session_counts_retry(store):
    session = store.create(1, SyncType.FULL, SyncCursor(page=4))
    token = store.claim(session.id, 900)
    store.finish_chunk(
        session.id, token, SessionStatus.FAILED, SyncCursor(page=4), Progress(),
        failed_stage="fetching", error_code="upstream_unavailable", error_message="Strava unreachable",
    )
    assert store.claim(session.id, 900) is None
    token = store.claim(session.id, 900, statuses=(SessionStatus.FAILED,))
    assert store.reopen(session.id, token)
    loaded = store.get(session.id)
    assert loaded.status == SessionStatus.FETCHING
    assert loaded.retry_count == 1
    assert loaded.error_code is None
    assert loaded.cursor.page == 4


def test_stalled_session_can_be_failed(store, clock):
    session = store.create(1, SyncType.FULL, SyncCursor())
    assert not store.fail_if_stalled(session.id, idle_after_sec=3600, stale_after_sec=900)
    clock.advance(3601)
    assert store.fail_if_stalled(session.id, idle_after_sec=3600, stale_after_sec=900)
    loaded = store.get(session.id)
    assert loaded.status == SessionStatus.FAILED
    assert loaded.failed_stage == SessionStatus.PENDING
    assert loaded.error_code == "session_stalled"


def test_runnable_lists_unowned_active_sessions(store, clock):
    a = store.create(1, SyncType.FULL, SyncCursor())
    b = store.create(2, SyncType.FULL, SyncCursor())
    store.claim(b.id, 900)
    assert [s.id for s in store.runnable(900)] == [a.id]
    clock.advance(901)
    assert {s.id for s in store.runnable(900)} == {a.id, b.id}
    assert store.count_active() == 2


def test_history_and_cleanup(store, clock):
    old = store.create(1, SyncType.FULL, SyncCursor())
    store.request_cancel(old.id, 900)
    clock.advance(8 * 86400)
    recent = store.create(1, SyncType.RELATIVE, SyncCursor(after=1))
    store.request_cancel(recent.id, 900)
    clock.advance(1)
    active = store.create(1, SyncType.FULL, SyncCursor())

    history = store.history(1, limit=10)
    assert [s.id for s in history] == [active.id, recent.id, old.id]
    assert [s.id for s in store.history(1, limit=1)] == [active.id]

    assert store.cleanup(keep_days=7, user_id=1) == 1
    assert store.get(old.id) is None
    assert store.get(recent.id) is not None
    assert store.get(active.id) is not None
