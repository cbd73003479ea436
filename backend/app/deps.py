from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_admin_conn
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "restopos_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    # Terminals don't know their company a priori; resolve the session with the
    # admin connection and hand the company id to handlers for tenant scoping.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       u.company_id, u.default_store_id, u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "actor_id": row["user_id"],
                "company_id": row["company_id"],
                "default_store_id": row["default_store_id"],
            }


def require_actor(session=Depends(get_session)):
    # Orders are always attributed to the actor's default store; without one
    # there is nowhere to put them.
    if not session.get("default_store_id"):
        raise HTTPException(status_code=403, detail="no default store")
    return {
        "actor_id": str(session["actor_id"]),
        "company_id": str(session["company_id"]),
        "default_store_id": str(session["default_store_id"]),
    }
