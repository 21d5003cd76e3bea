from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]

load_dotenv(ROOT / ".env")

DB_URL = os.getenv("RUNSYNC_DB_URL")
DB_PATH = Path(os.getenv("RUNSYNC_DB_PATH", ROOT / "data" / "runsync.db"))
API_HOST = os.getenv("RUNSYNC_API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("RUNSYNC_API_PORT", "8000"))
RUN_MODE = os.getenv("RUN_MODE", "dev").lower()
JWT_SECRET = os.getenv("RUNSYNC_JWT_SECRET", "dev-secret")
JWT_ALG = os.getenv("RUNSYNC_JWT_ALG", "HS256")
JWT_EXP_MINUTES = int(os.getenv("RUNSYNC_JWT_EXP_MINUTES", "60"))
AUTH_DISABLED = os.getenv("RUNSYNC_AUTH_DISABLED", "1" if RUN_MODE == "dev" else "0") == "1"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "RUNSYNC_CORS_ORIGINS",
        "http://127.0.0.1:8788,http://localhost:8788",
    ).split(",")
    if origin.strip()
]

# Scheduler
WORKER_INTERVAL_SEC = int(os.getenv("RUNSYNC_WORKER_INTERVAL_SEC", "30"))

STRAVA_API_BASE = "https://www.strava.com/api/v3"
STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
OPENWEATHER_API_BASE = "https://api.openweathermap.org"


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class SyncSettings:
    """Everything the sync pipeline needs, resolved once and passed down."""

    db_url: str | None = None
    db_path: Path = ROOT / "data" / "runsync.db"
    strava_client_id: str | None = None
    strava_client_secret: str | None = None
    strava_api_base: str = STRAVA_API_BASE
    strava_token_url: str = STRAVA_TOKEN_URL
    weather_api_key: str | None = None
    weather_api_base: str = OPENWEATHER_API_BASE
    per_page: int = 50
    activity_types: tuple[str, ...] = ("Run", "TrailRun")
    enrich_workers: int = 4
    http_timeout_sec: float = 30.0
    max_retries: int = 3
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0
    stale_after_sec: int = 900
    stalled_after_sec: int = 3600
    token_refresh_margin_sec: int = 60
    on_conflict: str = "skip"
    session_keep_days: int = 7


def load_settings() -> SyncSettings:
    types = tuple(
        t.strip()
        for t in os.getenv("RUNSYNC_ACTIVITY_TYPES", "Run,TrailRun").split(",")
        if t.strip()
    )
    on_conflict = os.getenv("RUNSYNC_ON_CONFLICT", "skip").strip().lower()
    if on_conflict not in ("skip", "overwrite"):
        raise ValueError(f"RUNSYNC_ON_CONFLICT must be 'skip' or 'overwrite', got {on_conflict!r}")
    per_page = _int_env("RUNSYNC_PER_PAGE", 50)
    if not 1 <= per_page <= 200:
        raise ValueError("RUNSYNC_PER_PAGE must be between 1 and 200")
    return SyncSettings(
        db_url=os.getenv("RUNSYNC_DB_URL") or None,
        db_path=Path(os.getenv("RUNSYNC_DB_PATH", ROOT / "data" / "runsync.db")),
        strava_client_id=os.getenv("STRAVA_CLIENT_ID") or None,
        strava_client_secret=os.getenv("STRAVA_CLIENT_SECRET") or None,
        strava_api_base=os.getenv("RUNSYNC_STRAVA_API_BASE", STRAVA_API_BASE).rstrip("/"),
        strava_token_url=os.getenv("RUNSYNC_STRAVA_TOKEN_URL", STRAVA_TOKEN_URL),
        weather_api_key=os.getenv("RUNSYNC_OPENWEATHER_API_KEY") or None,
        weather_api_base=os.getenv("RUNSYNC_WEATHER_API_BASE", OPENWEATHER_API_BASE).rstrip("/"),
        per_page=per_page,
        activity_types=types,
        enrich_workers=max(_int_env("RUNSYNC_ENRICH_WORKERS", 4), 1),
        http_timeout_sec=_float_env("RUNSYNC_HTTP_TIMEOUT_SEC", 30.0),
        max_retries=max(_int_env("RUNSYNC_MAX_RETRIES", 3), 0),
        backoff_base_sec=_float_env("RUNSYNC_BACKOFF_BASE_SEC", 1.0),
        backoff_max_sec=_float_env("RUNSYNC_BACKOFF_MAX_SEC", 30.0),
        stale_after_sec=_int_env("RUNSYNC_STALE_AFTER_SEC", 900),
        stalled_after_sec=_int_env("RUNSYNC_STALLED_AFTER_SEC", 3600),
        token_refresh_margin_sec=_int_env("RUNSYNC_TOKEN_REFRESH_MARGIN_SEC", 60),
        on_conflict=on_conflict,
        session_keep_days=_int_env("RUNSYNC_SESSION_KEEP_DAYS", 7),
    )
