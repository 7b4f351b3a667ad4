from __future__ import annotations

import hashlib
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_db
from .models import AppSession, AppUser

SESSION_COOKIE = "willtank_session"
CSRF_COOKIE = "willtank_csrf"


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def get_current_session_from_request(request: Request, db: Session) -> tuple[AppSession, AppUser] | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None
    now = datetime.now(timezone.utc)
    sess = db.execute(
        select(AppSession).where(AppSession.token_sha256 == sha256_hex(token), AppSession.expires_at > now)
    ).scalar_one_or_none()
    if not sess:
        return None
    user = db.execute(
        select(AppUser).where(AppUser.id == sess.user_id, AppUser.is_active == True)  # noqa: E712
    ).scalar_one_or_none()
    if not user:
        return None
    return sess, user


def require_session(request: Request, db: Session = Depends(get_db)) -> tuple[AppSession, AppUser]:
    """Logged in, whether or not the second factor has been presented yet."""
    res = get_current_session_from_request(request, db)
    if not res:
        raise HTTPException(401, "Not authenticated")
    return res


def require_verified_session(request: Request, db: Session = Depends(get_db)) -> tuple[AppSession, AppUser]:
    """Logged in, and the second factor was presented if the account has 2FA on."""
    sess, user = require_session(request, db)
    if user.two_factor_enabled and not sess.two_factor_verified_at:
        raise HTTPException(403, "Two-factor verification required")
    return sess, user


def require_user(request: Request, db: Session = Depends(get_db)) -> AppUser:
    _, user = require_verified_session(request, db)
    return user
