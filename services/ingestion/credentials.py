from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from packages.config import STRAVA_TOKEN_URL
from packages.logging_utils import log_event
from packages.metrics import inc

from .errors import AuthError, UpstreamError, UpstreamRateLimited, UpstreamUnavailable
from .upstream_http import HTTPStatusError, post_form as default_post_form


logger = logging.getLogger("runsync.credentials")


@dataclass
class CredentialSet:
    user_id: int
    access_token: str
    refresh_token: str
    expires_at: int
    updated_at: Optional[str] = None

    def expires_within(self, now: float, margin: int) -> bool:
        return self.expires_at <= now + margin


class CredentialManager:
    """Owns the stored Strava token pair for each user.

    ``get_valid_token`` is the only read path the pipeline uses. A refreshed
    pair is committed before the new access token is handed back, so a crash
    right after a refresh never loses the rotated refresh token.
    """

    def __init__(
        self,
        connect: Callable,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_url: str = STRAVA_TOKEN_URL,
        post_form: Callable = default_post_form,
        clock: Callable[[], float] = time.time,
        refresh_margin: int = 60,
        timeout: float = 30,
    ):
        self._connect = connect
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._post_form = post_form
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._timeout = timeout

    def load(self, user_id: int) -> Optional[CredentialSet]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, access_token, refresh_token, expires_at, updated_at
                FROM strava_credentials
                WHERE user_id=?
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return CredentialSet(int(row[0]), row[1], row[2], int(row[3]), row[4])

    def store(self, creds: CredentialSet) -> CredentialSet:
        creds.updated_at = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO strava_credentials(user_id, access_token, refresh_token, expires_at, updated_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  access_token=excluded.access_token,
                  refresh_token=excluded.refresh_token,
                  expires_at=excluded.expires_at,
                  updated_at=excluded.updated_at
                """,
                (creds.user_id, creds.access_token, creds.refresh_token, creds.expires_at, creds.updated_at),
            )
        return creds

    def get_valid_token(self, user_id: int, force_refresh: bool = False) -> str:
        creds = self.load(user_id)
        if creds is None:
            raise AuthError("No Strava credentials stored for user; connect Strava first.")
        if not force_refresh and not creds.expires_within(self._clock(), self._refresh_margin):
            return creds.access_token
        return self.refresh(creds).access_token

    def refresh(self, creds: CredentialSet) -> CredentialSet:
        payload = self._token_request(
            {
                "refresh_token": creds.refresh_token,
                "grant_type": "refresh_token",
            }
        )
        refreshed = self._from_token_payload(creds.user_id, payload, fallback_refresh=creds.refresh_token)
        self.store(refreshed)
        inc("strava_token_refresh_total")
        log_event(logger, "token_refreshed", user_id=creds.user_id, expires_at=refreshed.expires_at)
        return refreshed

    def exchange_code(self, user_id: int, code: str) -> CredentialSet:
        """Finish the OAuth connect flow by trading an authorization code."""
        payload = self._token_request({"code": code, "grant_type": "authorization_code"})
        creds = self._from_token_payload(user_id, payload)
        self.store(creds)
        log_event(logger, "strava_connected", user_id=user_id)
        return creds

    def _from_token_payload(self, user_id: int, payload, fallback_refresh: Optional[str] = None) -> CredentialSet:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise UpstreamError("Token endpoint returned no access token.")
        refresh_token = payload.get("refresh_token") or fallback_refresh
        if not refresh_token:
            raise UpstreamError("Token endpoint returned no refresh token.")
        try:
            expires_at = int(payload.get("expires_at") or self._clock() + 3600)
        except (TypeError, ValueError):
            expires_at = int(self._clock() + 3600)
        return CredentialSet(user_id, payload["access_token"], refresh_token, expires_at)

    def _token_request(self, data: dict) -> dict:
        if not (self._client_id and self._client_secret):
            raise AuthError("Strava client credentials are not configured.")
        form = {"client_id": self._client_id, "client_secret": self._client_secret, **data}
        try:
            return self._post_form(self._token_url, form, timeout=self._timeout)
        except HTTPStatusError as exc:
            if exc.status == 429:
                raise UpstreamRateLimited("Token endpoint rate limited.", status=exc.status) from None
            if exc.status >= 500:
                raise UpstreamUnavailable("Token endpoint unavailable.", status=exc.status) from None
            raise AuthError("Strava rejected the token grant; reconnect required.", status=exc.status) from None
        except OSError as exc:
            raise UpstreamUnavailable(f"Token endpoint unreachable: {type(exc).__name__}") from None
        except ValueError:
            raise UpstreamError("Token endpoint returned malformed JSON.") from None
