from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from packages.db import DATABASE_ERRORS, OUTAGE_ERRORS
from packages.metrics import inc

from .errors import PersistenceError
from .weather_api_import import EnrichedActivity


logger = logging.getLogger("runsync.persist")

ROW_COLUMNS = (
    "strava_id",
    "name",
    "sport_type",
    "distance_m",
    "moving_time_s",
    "elapsed_time_s",
    "start_date",
    "start_date_local",
    "timezone",
    "start_lat",
    "start_lng",
    "end_lat",
    "end_lng",
    "average_speed",
    "max_speed",
    "average_heartrate",
    "max_heartrate",
    "total_elevation_gain",
    "temperature_c",
    "feels_like_c",
    "humidity",
    "pressure_hpa",
    "wind_speed_ms",
    "wind_deg",
    "weather_code",
    "weather_condition",
    "city",
    "state",
    "country",
)
INSERT_COLUMNS = ("user_id",) + ROW_COLUMNS + ("raw_json", "sync_session_id", "created_at", "updated_at")
CONFLICT_POLICIES = ("skip", "overwrite")


@dataclass
class PersistResult:
    saved: int = 0
    skipped: int = 0
    failed: int = 0
    updated: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.saved + self.skipped + self.failed


def _upsert_sql(on_conflict: str) -> str:
    columns = ", ".join(INSERT_COLUMNS)
    placeholders = ", ".join("?" for _ in INSERT_COLUMNS)
    sql = f"INSERT INTO runs({columns}) VALUES({placeholders}) ON CONFLICT(user_id, strava_id) DO "
    if on_conflict == "overwrite":
        updates = ",\n  ".join(
            f"{col}=excluded.{col}" for col in ROW_COLUMNS + ("raw_json", "sync_session_id", "updated_at")
        )
        return sql + f"UPDATE SET\n  {updates}"
    return sql + "NOTHING"


class RecordPersister:
    """Writes enriched runs for one user, idempotently.

    Incoming ids already stored are reported as skipped (or rewritten in
    ``overwrite`` mode). New rows go in as one batch; if the batch fails every
    row is retried in its own transaction so one bad record costs one row.
    Only an unreachable store (``OUTAGE_ERRORS``) fails the whole page.
    """

    def __init__(self, connect: Callable, on_conflict: str = "skip"):
        if on_conflict not in CONFLICT_POLICIES:
            raise ValueError(f"on_conflict must be one of {CONFLICT_POLICIES}")
        self._connect = connect
        self._on_conflict = on_conflict
        self._sql = _upsert_sql(on_conflict)

    @property
    def on_conflict(self) -> str:
        return self._on_conflict

    def persist(self, user_id: int, items: list[EnrichedActivity], session_id: Optional[str] = None) -> PersistResult:
        result = PersistResult()
        if not items:
            return result

        existing = self._existing_ids(user_id, [item.source_id for item in items])
        pending: list[EnrichedActivity] = []
        seen: set[str] = set()
        for item in items:
            if item.source_id in seen:
                result.skipped += 1
                continue
            seen.add(item.source_id)
            if item.source_id in existing:
                if self._on_conflict == "overwrite":
                    result.updated += 1
                    pending.append(item)
                else:
                    result.skipped += 1
                continue
            pending.append(item)

        if not pending:
            return result

        now = datetime.now(timezone.utc).isoformat()
        rows = [self._row_params(user_id, item, session_id, now) for item in pending]
        try:
            with self._connect() as conn:
                written = conn.executemany(self._sql, rows).rowcount
            if self._on_conflict == "skip" and 0 <= written < len(rows):
                # Rows inserted by a concurrent writer after the duplicate check.
                result.skipped += len(rows) - written
                result.saved += written
            else:
                result.saved += len(rows)
            inc("runs_saved_total", result.saved)
            return result
        except DATABASE_ERRORS as exc:
            logger.warning("Batch insert of %s runs failed (%s); retrying row by row", len(rows), type(exc).__name__)

        result.updated = 0
        try:
            for item, params in zip(pending, rows):
                self._persist_one(item, params, existing, result)
        finally:
            inc("runs_saved_total", result.saved)
        return result

    def _persist_one(self, item: EnrichedActivity, params: tuple, existing: set[str], result: PersistResult) -> None:
        try:
            with self._connect() as conn:
                cur = conn.execute(self._sql, params)
                written = cur.rowcount
        except OUTAGE_ERRORS as exc:
            raise PersistenceError(
                f"Storage unavailable while saving runs ({type(exc).__name__}).",
                result=result,
            ) from None
        except DATABASE_ERRORS as exc:
            result.failed += 1
            result.failures.append(item.source_id)
            inc("runs_failed_total")
            logger.error(
                "Failed to store run strava_id=%s name=%r: %s",
                item.source_id,
                item.activity.name,
                type(exc).__name__,
            )
            return
        if written == 0:
            # Raced with another writer under DO NOTHING.
            result.skipped += 1
            return
        result.saved += 1
        if item.source_id in existing:
            result.updated += 1

    def _existing_ids(self, user_id: int, source_ids: list[str]) -> set[str]:
        unique = sorted(set(source_ids))
        placeholders = ", ".join("?" for _ in unique)
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT strava_id FROM runs WHERE user_id=? AND strava_id IN ({placeholders})",
                    (user_id, *unique),
                ).fetchall()
        except DATABASE_ERRORS as exc:
            raise PersistenceError(f"Duplicate check failed: {type(exc).__name__}") from None
        return {str(row[0]) for row in rows}

    def latest_start(self, user_id: int) -> Optional[str]:
        """Start time of the newest stored run, used for incremental windows."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MAX(start_date) FROM runs WHERE user_id=?",
                (user_id,),
            ).fetchone()
        return row[0] if row and row[0] else None

    def count(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM runs WHERE user_id=?", (user_id,)).fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _row_params(user_id: int, item: EnrichedActivity, session_id: Optional[str], now: str) -> tuple:
        row = item.to_row()
        return (
            user_id,
            *(row[col] for col in ROW_COLUMNS),
            json.dumps(item.activity.raw, default=str),
            session_id,
            now,
            now,
        )
