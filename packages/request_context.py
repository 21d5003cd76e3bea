from contextvars import ContextVar
from contextlib import contextmanager


request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
sync_session_id_var: ContextVar[str | None] = ContextVar("sync_session_id", default=None)


@contextmanager
def sync_session_context(session_id: str | None):
    token = sync_session_id_var.set(str(session_id) if session_id is not None else None)
    try:
        yield
    finally:
        sync_session_id_var.reset(token)
