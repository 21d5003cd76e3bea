import logging

from packages import metrics
from packages.error_reporting import REDACTED, scrub
from packages.logging_utils import log_event
from packages.request_context import sync_session_context, sync_session_id_var
from services.ingestion.errors import SyncError, UpstreamRateLimited, classify_http_status
from services.ingestion.upstream_http import redact_url


def test_log_event_renders_key_values(caplog):
    logger = logging.getLogger("runsync.test")
    with caplog.at_level(logging.INFO, logger="runsync.test"):
        log_event(logger, "page_persisted", saved=3, skipped=None, duration=0.5, name="Morning Run")
    assert caplog.messages[-1] == 'event=page_persisted saved=3 skipped=- duration=0.500 name="Morning Run"'


def test_session_context_is_scoped():
    assert sync_session_id_var.get() is None
    with sync_session_context("abc"):
        assert sync_session_id_var.get() == "abc"
    assert sync_session_id_var.get() is None


def test_scrub_redacts_nested_credentials():
    event = {
        "request": {"headers": {"Authorization": "Bearer t0k3n"}, "data": {"client_secret": "s"}},
        "extra": [{"refresh_token": "r", "user_id": 4}],
    }
    cleaned = scrub(event)
    assert cleaned["request"]["headers"]["Authorization"] == REDACTED
    assert cleaned["request"]["data"]["client_secret"] == REDACTED
    assert cleaned["extra"][0] == {"refresh_token": REDACTED, "user_id": 4}
    assert event["extra"][0]["refresh_token"] == "r"


def test_redact_url_masks_secrets_only():
    url = "https://api.openweathermap.org/geo/1.0/reverse?lat=1.0&lon=2.0&appid=SECRET"
    redacted = redact_url(url)
    assert "SECRET" not in redacted
    assert "appid=***" in redacted
    assert "lat=1.0" in redacted
    assert redact_url("https://www.strava.com/api/v3/athlete") == "https://www.strava.com/api/v3/athlete"


def test_http_status_classification():
    assert isinstance(classify_http_status(429, "slow down", "fetching"), UpstreamRateLimited)
    assert classify_http_status(401, "nope", "fetching").code == "token_rejected"
    assert classify_http_status(503, "down", "fetching").retryable
    assert not classify_http_status(404, "missing", "fetching").retryable


def test_error_summary_is_bounded():
    err = SyncError("x" * 500, stage="fetching", status=502)
    summary = err.summary(limit=50)
    assert len(summary) <= 50 + len(" (status 502)")
    assert summary.endswith("(status 502)")


def test_metrics_snapshot_accumulates():
    metrics.inc("test_counter_total")
    metrics.inc("test_counter_total", 2)
    with metrics.timed("test_duration_seconds"):
        pass
    counters, durations = metrics.snapshot()
    assert counters["test_counter_total"] >= 3
    assert durations["test_duration_seconds"] >= 0.0
