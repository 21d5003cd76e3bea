from functools import lru_cache

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from packages import db
from packages.config import AUTH_DISABLED
from services.ingestion.sync_orchestrator import SyncOrchestrator, build_orchestrator
from .auth import decode_token


auth_scheme = HTTPBearer(auto_error=False)


@lru_cache(maxsize=1)
def get_orchestrator() -> SyncOrchestrator:
    return build_orchestrator()


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)):
    if AUTH_DISABLED:
        with db.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id, username FROM users ORDER BY id LIMIT 1")
            row = cur.fetchone()
            if row:
                return {"id": row[0], "username": row[1], "auth_disabled": True}
            # Auto-create a dev user if none exist.
            cur.execute("INSERT INTO users(username) VALUES(?)", ("dev",))
            cur.execute("SELECT id FROM users WHERE username=?", ("dev",))
            user_id = cur.fetchone()[0]
            conn.commit()
            return {"id": user_id, "username": "dev", "auth_disabled": True}
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    try:
        payload = decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return {"id": int(user_id), "username": payload.get("username"), "auth_disabled": False}


def resolve_user_id(user: dict, requested: int | None) -> int:
    """The caller acts on itself unless auth is off and another user is named."""
    if requested is None or requested == user["id"]:
        return user["id"]
    if user.get("auth_disabled"):
        return requested
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot act on another user's sync")
