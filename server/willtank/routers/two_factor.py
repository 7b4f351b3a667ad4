from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import require_session, require_verified_session
from ..models import AppSession, AppUser
from ..schemas import (
    DisablePayload,
    TokenCheckOut,
    TokenPayload,
    TwoFactorEnabledOut,
    TwoFactorSecretOut,
    TwoFactorStatusOut,
)
from ..services import two_factor_accounts as accounts
from ..services.audit import log_event
from ..services.db_utils import transaction
from ..services.passwords import verify_password
from ..services.rate_limit import FixedWindowRateLimiter
from ..services.two_factor import generate_secret, verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/2fa", tags=["two-factor"])

attempt_limiter = FixedWindowRateLimiter(
    limit=settings.two_factor_rate_limit,
    window_seconds=settings.two_factor_rate_window_seconds,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_attempts(user: AppUser) -> str:
    key = f"2fa:{user.id}"
    rl = attempt_limiter.check(key)
    attempt_limiter.cleanup()
    if not rl.allowed:
        raise HTTPException(429, f"Too many verification attempts. Try again in {rl.retry_after_seconds}s")
    return key


def _check_second_factor(db: Session, user: AppUser, code: str) -> TokenCheckOut:
    """TOTP first, then a backup code (which is consumed on match)."""
    st = accounts.get_status(db, user.id)
    if not st.enabled or not st.secret:
        return TokenCheckOut(valid=False)

    if verify_token(code, st.secret):
        return TokenCheckOut(valid=True)

    check = accounts.consume_backup_code(db, user.id, code)
    if check.valid:
        return TokenCheckOut(valid=True, used_backup_code=True, remaining_backup_codes=len(check.remaining_codes))
    return TokenCheckOut(valid=False)


@router.get("/status", response_model=TwoFactorStatusOut)
def status(db: Session = Depends(get_db), auth: tuple[AppSession, AppUser] = Depends(require_verified_session)):
    _, user = auth
    st = accounts.get_status(db, user.id)
    return TwoFactorStatusOut(enabled=st.enabled, has_two_factor_secret=bool(st.secret), backup_codes=st.backup_codes)


@router.post("/generate", response_model=TwoFactorSecretOut)
def generate(db: Session = Depends(get_db), auth: tuple[AppSession, AppUser] = Depends(require_verified_session)):
    sess, user = auth
    if user.two_factor_enabled:
        raise HTTPException(400, "Two-factor authentication is already enabled")

    gen = generate_secret(user.username)
    with transaction(db):
        # A new secret replaces any earlier unconfirmed one.
        sess.pending_two_factor_secret = gen.secret

    return TwoFactorSecretOut(secret=gen.secret, qr_code=gen.qr_code_data_url, otp_auth_url=gen.otpauth_url)


@router.post("/verify", response_model=TwoFactorEnabledOut)
def verify_and_enable(
    payload: TokenPayload,
    request: Request,
    db: Session = Depends(get_db),
    auth: tuple[AppSession, AppUser] = Depends(require_verified_session),
):
    sess, user = auth
    secret = sess.pending_two_factor_secret
    if not secret:
        raise HTTPException(400, "No pending two-factor setup. Generate a new secret first")

    key = _check_attempts(user)
    if not verify_token(payload.token, secret):
        raise HTTPException(400, "Invalid verification code")
    attempt_limiter.reset(key)

    sess.pending_two_factor_secret = None
    sess.two_factor_verified_at = _now()
    log_event(db, action="security.2fa_enabled", actor=user, request=request)
    # enable() commits the session changes above in the same transaction.
    codes = accounts.enable(db, user.id, secret)

    return TwoFactorEnabledOut(backup_codes=codes)


@router.post("/disable")
def disable(
    payload: DisablePayload,
    request: Request,
    db: Session = Depends(get_db),
    auth: tuple[AppSession, AppUser] = Depends(require_verified_session),
):
    _, user = auth
    if not user.two_factor_enabled:
        raise HTTPException(400, "Two-factor authentication is not enabled")
    if not verify_password(payload.password, user.password_hash):
        raise HTTPException(403, "Invalid password")
    if payload.token:
        _check_attempts(user)
        if not _check_second_factor(db, user, payload.token).valid:
            raise HTTPException(400, "Invalid verification code")

    log_event(db, action="security.2fa_disabled", actor=user, request=request)
    accounts.disable(db, user.id)
    return {"success": True}


@router.post("/verify-token", response_model=TokenCheckOut)
def verify_login_token(
    payload: TokenPayload,
    request: Request,
    db: Session = Depends(get_db),
    auth: tuple[AppSession, AppUser] = Depends(require_session),
):
    sess, user = auth
    key = _check_attempts(user)

    if sess.two_factor_verified_at is not None:
        # Already past the second factor: never spend a backup code here.
        st = accounts.get_status(db, user.id)
        return TokenCheckOut(valid=bool(st.enabled and st.secret and verify_token(payload.token, st.secret)))

    result = _check_second_factor(db, user, payload.token)
    if not result.valid:
        logger.info("Rejected second factor for user %s", user.id)
        return result

    attempt_limiter.reset(key)
    with transaction(db):
        sess.two_factor_verified_at = _now()
        log_event(
            db,
            action="security.2fa_verified",
            actor=user,
            request=request,
            meta={"used_backup_code": result.used_backup_code},
        )
    return result
