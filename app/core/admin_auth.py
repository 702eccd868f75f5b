from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Depends, HTTPException, Request
from jose import JWTError
from sqlalchemy.orm import Session
from sqlalchemy import text

from app.core.db import get_db
from app.core.admin_security import decode_admin_token

logger = logging.getLogger("app.admin_auth")

ADMIN_COOKIE_NAME = os.getenv("ADMIN_COOKIE_NAME", "admin_token")
RECONCILIATION_ROLES = frozenset({"admin", "directorate"})


@dataclass
class SessionCheck:
    authenticated: bool
    is_admin: bool
    role: Optional[str] = None
    user: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


def _read_token(request: Request) -> str | None:
    token = request.cookies.get(ADMIN_COOKIE_NAME)
    if token:
        return token
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


def verify_admin_session(request: Request, db: Session) -> SessionCheck:
    """Resolves the caller's role; allow/deny is role in RECONCILIATION_ROLES."""
    token = _read_token(request)
    if not token:
        return SessionCheck(authenticated=False, is_admin=False, error="Not authenticated")

    try:
        payload = decode_admin_token(token)
    except JWTError:
        return SessionCheck(authenticated=False, is_admin=False, error="Invalid token")

    if payload.get("typ") != "staff" or payload.get("uid") is None:
        return SessionCheck(authenticated=False, is_admin=False, error="Invalid token type")

    row = db.execute(
        text("""
            select id, email, role, is_active
              from staff_users
             where id = :id
             limit 1
        """),
        {"id": int(payload.get("uid"))},
    ).fetchone()

    if not row or not bool(row[3]):
        return SessionCheck(authenticated=False, is_admin=False, error="User disabled or not found")

    # role comes from the database, not from the token
    role = str(row[2])
    allowed = role in RECONCILIATION_ROLES
    return SessionCheck(
        authenticated=True,
        is_admin=allowed,
        role=role,
        user={"user_id": int(row[0]), "email": str(row[1]), "role": role},
        error=None if allowed else "Access denied: requires admin privileges",
    )


def require_admin(
    request: Request,
    db: Session = Depends(get_db),
) -> dict:
    check = verify_admin_session(request, db)

    if not check.authenticated:
        raise HTTPException(status_code=401, detail=check.error or "Not authenticated")

    if not check.is_admin:
        logger.warning("access denied for %s (role=%s) on %s", check.user.get("email"), check.role, request.url.path)
        raise HTTPException(status_code=403, detail=check.error or "Access denied")

    return check.user
