import sqlite3
from pathlib import Path
from typing import Iterable, Optional

import packages.config as config

try:  # Optional dependency for Postgres
    import psycopg2
except ImportError:  # pragma: no cover - optional in SQLite-only envs
    psycopg2 = None


DATABASE_ERRORS: tuple = (sqlite3.Error,) + ((psycopg2.Error,) if psycopg2 is not None else ())
INTEGRITY_ERRORS: tuple = (sqlite3.IntegrityError,) + ((psycopg2.IntegrityError,) if psycopg2 is not None else ())
# The store itself is unreachable or unusable, as opposed to one row being rejected.
OUTAGE_ERRORS: tuple = (sqlite3.OperationalError, sqlite3.InterfaceError) + (
    (psycopg2.OperationalError, psycopg2.InterfaceError) if psycopg2 is not None else ()
)


def is_postgres(url: Optional[str] = None) -> bool:
    url = config.DB_URL if url is None else url
    return bool(url) and url.startswith("postgres")


def db_exists(url: Optional[str] = None, path: Optional[Path] = None) -> bool:
    if is_postgres(url):
        return True
    return Path(path or config.DB_PATH).exists()


def _adapt_sql(sql: str) -> str:
    return sql.replace("?", "%s")


class DBCursor:
    def __init__(self, cursor, postgres: bool):
        self._cursor = cursor
        self._postgres = postgres

    @property
    def description(self):
        return self._cursor.description

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    def execute(self, sql: str, params: Optional[Iterable] = None):
        sql = _adapt_sql(sql) if self._postgres else sql
        if params is None:
            self._cursor.execute(sql)
        else:
            self._cursor.execute(sql, list(params))
        return self

    def executemany(self, sql: str, rows: Iterable[Iterable]):
        sql = _adapt_sql(sql) if self._postgres else sql
        self._cursor.executemany(sql, [list(row) for row in rows])
        return self

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    def __iter__(self):
        return iter(self._cursor)


class DBConnection:
    def __init__(self, conn, postgres: bool):
        self._conn = conn
        self._postgres = postgres

    @property
    def postgres(self) -> bool:
        return self._postgres

    def cursor(self):
        return DBCursor(self._conn.cursor(), self._postgres)

    def execute(self, sql: str, params: Optional[Iterable] = None):
        cur = self.cursor()
        cur.execute(sql, params)
        return cur

    def executemany(self, sql: str, rows: Iterable[Iterable]):
        cur = self.cursor()
        cur.executemany(sql, rows)
        return cur

    def executescript(self, sql: str) -> None:
        if not self._postgres:
            self._conn.executescript(sql)
            return
        for stmt in _split_sql(sql):
            if stmt:
                self._conn.cursor().execute(stmt)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type:
            try:
                self.rollback()
            finally:
                self.close()
        else:
            try:
                self.commit()
            finally:
                self.close()


def connect(url: Optional[str] = None, path: Optional[Path] = None) -> DBConnection:
    if url is None and path is None:
        url = config.DB_URL
    if is_postgres(url):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is required for Postgres. Install the 'postgres' extra.")
        return DBConnection(psycopg2.connect(url), postgres=True)
    conn = DBConnection(sqlite3.connect(str(path or config.DB_PATH), timeout=30), postgres=False)
    configure_connection(conn)
    return conn


def configure_connection(conn: DBConnection) -> None:
    if conn.postgres:
        return
    try:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
    except sqlite3.OperationalError:
        return


def schema_path(postgres: bool = False) -> Path:
    root = Path(__file__).resolve().parents[1]
    if postgres:
        return root / "database" / "schemas" / "schema_pg.sql"
    return root / "database" / "schemas" / "schema.sql"


def init_schema(conn: DBConnection) -> Path:
    schema = schema_path(conn.postgres)
    conn.executescript(schema.read_text())
    conn.commit()
    return schema


def _split_sql(sql: str) -> list[str]:
    parts = []
    buf = []
    for line in sql.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        buf.append(line)
        if stripped.endswith(";"):
            parts.append("\n".join(buf).strip().rstrip(";"))
            buf = []
    if buf:
        parts.append("\n".join(buf).strip().rstrip(";"))
    return parts
