"""Error taxonomy for the sync pipeline.

Every stage raises a subclass of :class:`SyncError`. The orchestrator only
inspects ``code``, ``retryable`` and ``stage``; ``message`` is what ends up on
the session row and in API responses, so it must never carry tokens, secrets
or raw upstream payloads.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    code = "sync_error"
    retryable = False

    def __init__(self, message: str, stage: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.status = status

    def summary(self, limit: int = 200) -> str:
        text = self.message[:limit]
        if self.status is not None:
            text = f"{text} (status {self.status})"
        return text


class AuthError(SyncError):
    code = "reauth_required"


class TokenRejected(AuthError):
    """The API refused an access token we believed was valid."""

    code = "token_rejected"


class UpstreamError(SyncError):
    code = "upstream_error"


class UpstreamRateLimited(UpstreamError):
    code = "upstream_rate_limited"
    retryable = True


class UpstreamUnavailable(UpstreamError):
    code = "upstream_unavailable"
    retryable = True


class EnrichmentFailure(SyncError):
    code = "enrichment_failed"


class PersistenceError(SyncError):
    code = "persistence_error"

    def __init__(self, message: str, result=None, stage: Optional[str] = "persisting"):
        super().__init__(message, stage=stage)
        self.result = result


class InternalError(SyncError):
    code = "internal_error"


class SessionNotFound(SyncError):
    code = "session_not_found"


class SessionLocked(SyncError):
    code = "session_locked"


class ActiveSessionExists(SyncError):
    code = "active_session_exists"

    def __init__(self, message: str, session_id: str):
        super().__init__(message)
        self.session_id = session_id


class InvalidSessionState(SyncError):
    code = "invalid_session_state"


class InvalidWindow(SyncError):
    code = "invalid_window"


class InvalidRequest(SyncError):
    code = "invalid_request"


def classify_http_status(status: int, message: str, stage: str) -> SyncError:
    """Map an upstream HTTP status to the matching error class."""
    if status == 401:
        return TokenRejected(message, stage=stage, status=status)
    if status == 429:
        return UpstreamRateLimited(message, stage=stage, status=status)
    if status >= 500:
        return UpstreamUnavailable(message, stage=stage, status=status)
    return UpstreamError(message, stage=stage, status=status)
