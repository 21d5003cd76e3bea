import sqlite3
import time
from pathlib import Path


ROOT = Path(__file__).resolve().parents[2]


def apply_schema(conn: sqlite3.Connection, root: Path = ROOT) -> None:
    schema_path = root / "database" / "schemas" / "schema.sql"
    conn.executescript(schema_path.read_text())


def seed_credentials(
    conn: sqlite3.Connection,
    user_id: int,
    access_token: str = "good-token",
    refresh_token: str = "refresh-1",
    expires_at: int | None = None,
) -> None:
    if expires_at is None:
        expires_at = int(time.time()) + 6 * 3600
    conn.execute(
        """
        INSERT INTO strava_credentials(user_id, access_token, refresh_token, expires_at, updated_at)
        VALUES(?, ?, ?, ?, ?)
        """,
        (user_id, access_token, refresh_token, expires_at, "2026-01-01T00:00:00+00:00"),
    )


def build_fixture_db(db_path: Path, with_credentials: bool = True) -> None:
    if db_path.exists():
        db_path.unlink()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        apply_schema(conn)
        conn.execute("INSERT INTO users(id, username) VALUES(1, 'u1')")
        conn.execute("INSERT INTO users(id, username) VALUES(2, 'u2')")
        if with_credentials:
            seed_credentials(conn, 1)
            seed_credentials(conn, 2, access_token="good-token-2", refresh_token="refresh-2")
        conn.commit()
    conn.close()


if __name__ == "__main__":
    build_fixture_db(Path("/tmp/runsync_fixture.db"))
