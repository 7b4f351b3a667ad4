from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import CSRF_COOKIE, SESSION_COOKIE, get_current_session_from_request, require_session, sha256_hex
from ..models import AppSession, AppUser
from ..schemas import Credentials, UserOut
from ..services.audit import log_event
from ..services.db_utils import transaction
from ..services.passwords import MIN_PASSWORD_LENGTH, hash_password, verify_password
from ..services.rate_limit import FixedWindowRateLimiter

router = APIRouter(prefix="/api", tags=["auth"])

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _user_out(user: AppUser) -> dict:
    out = UserOut(id=user.id, username=user.username, two_factor_enabled=bool(user.two_factor_enabled))
    return out.model_dump(by_alias=True)


login_limiter = FixedWindowRateLimiter(
    limit=settings.login_rate_limit,
    window_seconds=settings.login_rate_window_seconds,
)


def _start_session(db: Session, user: AppUser, request: Request, *, action: str) -> JSONResponse:
    token = secrets.token_urlsafe(32)
    now = datetime.now(timezone.utc)
    expires = now + timedelta(days=int(settings.ui_session_days))

    with transaction(db):
        # Cleanup expired sessions (best-effort)
        db.execute(delete(AppSession).where(AppSession.expires_at <= now))

        sess = AppSession(user_id=user.id, token_sha256=sha256_hex(token), expires_at=expires)
        # Without 2FA the password alone completes the login.
        if not user.two_factor_enabled:
            sess.two_factor_verified_at = now
        db.add(sess)
        log_event(db, action=action, actor=user, request=request)

    body = {
        "ok": True,
        "user": _user_out(user),
        "twoFactorRequired": bool(user.two_factor_enabled),
    }
    resp = JSONResponse(body)
    resp.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=bool(settings.ui_cookie_secure),
        expires=int(expires.timestamp()),
        path="/",
    )
    # CSRF protection: double-submit cookie.
    # Frontend must echo this value in X-CSRF-Token for state-changing requests.
    resp.set_cookie(
        key=CSRF_COOKIE,
        value=secrets.token_urlsafe(32),
        httponly=False,
        samesite="lax",
        secure=bool(settings.ui_cookie_secure),
        expires=int(expires.timestamp()),
        path="/",
    )
    return resp


@router.post("/register")
def register(payload: Credentials, request: Request, db: Session = Depends(get_db)):
    username = (payload.username or "").strip().lower()
    if not _EMAIL_RE.match(username):
        raise HTTPException(400, "Please enter a valid email address")
    if len(payload.password or "") < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    existing = db.execute(select(AppUser).where(AppUser.username == username)).scalar_one_or_none()
    if existing:
        raise HTTPException(409, "Username already exists")

    with transaction(db):
        user = AppUser(username=username, password_hash=hash_password(payload.password), is_active=True)
        db.add(user)
    db.refresh(user)

    return _start_session(db, user, request, action="auth.register")


@router.post("/login")
def login(payload: Credentials, request: Request, db: Session = Depends(get_db)):
    username = (payload.username or "").strip().lower()
    password = payload.password or ""
    if not username or not password:
        raise HTTPException(400, "username and password are required")

    ip = (getattr(request.client, "host", None) or "unknown").strip()
    rl = login_limiter.check(f"login:{ip}:{username}")
    login_limiter.cleanup()
    if not rl.allowed:
        raise HTTPException(429, f"Too many login attempts. Try again in {rl.retry_after_seconds}s")

    user = db.execute(
        select(AppUser).where(AppUser.username == username, AppUser.is_active == True)  # noqa: E712
    ).scalar_one_or_none()
    if not user or not verify_password(password, user.password_hash):
        raise HTTPException(401, "Invalid username or password")

    return _start_session(db, user, request, action="auth.login")


@router.post("/logout")
def logout(request: Request, db: Session = Depends(get_db)):
    res = get_current_session_from_request(request, db)
    if res:
        sess, user = res
        with transaction(db):
            db.delete(sess)
            log_event(db, action="auth.logout", actor=user, request=request)
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE, path="/")
    resp.delete_cookie(CSRF_COOKIE, path="/")
    return resp


@router.get("/user")
def current_user(auth: tuple[AppSession, AppUser] = Depends(require_session)):
    sess, user = auth
    return {
        **_user_out(user),
        "twoFactorVerified": bool(sess.two_factor_verified_at),
    }
