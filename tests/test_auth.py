import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from apps.api import deps
from apps.api.auth import create_token, decode_token


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_jwt_roundtrip():
    token = create_token(1, "tester")
    payload = decode_token(token)
    assert payload["sub"] == "1"
    assert payload["username"] == "tester"


def test_tampered_token_is_rejected():
    token = create_token(1, "tester") + "x"
    with pytest.raises(jwt.PyJWTError):
        decode_token(token)


def test_current_user_from_bearer(monkeypatch):
    monkeypatch.setattr(deps, "AUTH_DISABLED", False)
    user = deps.get_current_user(_bearer(create_token(5, "runner")))
    assert user == {"id": 5, "username": "runner", "auth_disabled": False}


def test_missing_or_bad_token_is_401(monkeypatch):
    monkeypatch.setattr(deps, "AUTH_DISABLED", False)
    with pytest.raises(HTTPException) as missing:
        deps.get_current_user(None)
    assert missing.value.status_code == 401
    with pytest.raises(HTTPException) as bad:
        deps.get_current_user(_bearer("not-a-jwt"))
    assert bad.value.status_code == 401


def test_resolve_user_id():
    caller = {"id": 1, "username": "u1", "auth_disabled": False}
    assert deps.resolve_user_id(caller, None) == 1
    assert deps.resolve_user_id(caller, 1) == 1
    with pytest.raises(HTTPException) as excinfo:
        deps.resolve_user_id(caller, 2)
    assert excinfo.value.status_code == 403
    assert deps.resolve_user_id({**caller, "auth_disabled": True}, 2) == 2
