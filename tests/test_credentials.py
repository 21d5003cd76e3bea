import time
from functools import partial
from pathlib import Path

import pytest

from packages import db
from services.ingestion.credentials import CredentialManager, CredentialSet
from services.ingestion.errors import AuthError, UpstreamRateLimited, UpstreamUnavailable
from tests.fixtures.build_fixture_db import build_fixture_db
from tests.fixtures.fake_upstream import FakeTokenEndpoint


@pytest.fixture()
def connect(tmp_path: Path):
    db_path = tmp_path / "fixture.db"
    build_fixture_db(db_path)
    return partial(db.connect, None, db_path)


def _manager(connect, endpoint, **kwargs):
    return CredentialManager(connect, "cid", "csecret", post_form=endpoint.post_form, **kwargs)


def test_valid_token_is_returned_without_refresh(connect):
    endpoint = FakeTokenEndpoint()
    manager = _manager(connect, endpoint)
    assert manager.get_valid_token(1) == "good-token"
    assert endpoint.calls == []


def test_expiring_token_is_refreshed_and_persisted(connect):
    endpoint = FakeTokenEndpoint(access_token="fresh-token", refresh_token="refresh-rotated")
    manager = _manager(connect, endpoint)
    manager.store(CredentialSet(1, "old-token", "refresh-1", int(time.time()) + 30))

    assert manager.get_valid_token(1) == "fresh-token"
    assert endpoint.calls[0]["grant_type"] == "refresh_token"
    assert endpoint.calls[0]["refresh_token"] == "refresh-1"
    assert endpoint.calls[0]["client_id"] == "cid"

    stored = manager.load(1)
    assert stored.access_token == "fresh-token"
    assert stored.refresh_token == "refresh-rotated"
    assert stored.expires_at == endpoint.expires_at


def test_refresh_keeps_refresh_token_when_not_rotated(connect):
    endpoint = FakeTokenEndpoint(access_token="fresh-token", refresh_token=None)
    manager = _manager(connect, endpoint)
    manager.get_valid_token(1, force_refresh=True)
    assert manager.load(1).refresh_token == "refresh-1"


def test_clock_and_margin_decide_refresh(connect):
    endpoint = FakeTokenEndpoint(access_token="fresh-token")
    now = time.time()
    manager = _manager(connect, endpoint, clock=lambda: now, refresh_margin=600)
    manager.store(CredentialSet(1, "old-token", "refresh-1", int(now) + 300))
    assert manager.get_valid_token(1) == "fresh-token"


def test_rejected_refresh_requires_reauth(connect):
    endpoint = FakeTokenEndpoint()
    endpoint.failures.append(400)
    manager = _manager(connect, endpoint)
    with pytest.raises(AuthError) as excinfo:
        manager.get_valid_token(1, force_refresh=True)
    assert excinfo.value.code == "reauth_required"
    assert not excinfo.value.retryable
    assert "refresh-1" not in excinfo.value.summary()


def test_refresh_outage_is_retryable(connect):
    endpoint = FakeTokenEndpoint()
    endpoint.failures.extend([503, 429, ConnectionResetError("reset")])
    manager = _manager(connect, endpoint)
    with pytest.raises(UpstreamUnavailable) as excinfo:
        manager.get_valid_token(1, force_refresh=True)
    assert excinfo.value.retryable
    assert excinfo.value.status == 503
    with pytest.raises(UpstreamRateLimited):
        manager.get_valid_token(1, force_refresh=True)
    with pytest.raises(UpstreamUnavailable):
        manager.get_valid_token(1, force_refresh=True)
    assert manager.load(1).access_token == "good-token"


def test_missing_credentials_require_reauth(tmp_path: Path):
    db_path = tmp_path / "fixture.db"
    build_fixture_db(db_path, with_credentials=False)
    manager = _manager(partial(db.connect, None, db_path), FakeTokenEndpoint())
    with pytest.raises(AuthError):
        manager.get_valid_token(1)


def test_missing_client_config_requires_reauth(connect):
    manager = CredentialManager(connect, None, None, post_form=FakeTokenEndpoint().post_form)
    with pytest.raises(AuthError):
        manager.get_valid_token(1, force_refresh=True)


def test_exchange_code_stores_new_pair(connect):
    endpoint = FakeTokenEndpoint(access_token="connected-token", refresh_token="connected-refresh")
    manager = _manager(connect, endpoint)
    creds = manager.exchange_code(2, "auth-code")
    assert endpoint.calls[0]["grant_type"] == "authorization_code"
    assert endpoint.calls[0]["code"] == "auth-code"
    assert creds.access_token == "connected-token"
    assert manager.load(2).refresh_token == "connected-refresh"
