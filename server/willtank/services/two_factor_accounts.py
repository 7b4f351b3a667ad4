"""Persisted two-factor state for user accounts.

``enable`` is the only path that turns 2FA on; ``disable`` clears the secret
and backup codes together. Backup codes live in ``users.backup_codes`` as a
JSON array and are consumed with a compare-and-swap on the stored payload so
that one code cannot be redeemed twice by concurrent requests.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..models import AppUser
from .db_utils import transaction
from .two_factor import BackupCodeCheck, generate_backup_codes, verify_backup_code

logger = logging.getLogger(__name__)


class UserNotFound(LookupError):
    def __init__(self, user_id):
        super().__init__(f"user {user_id} not found")
        self.user_id = user_id


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    secret: str | None = None
    backup_codes: list[str] | None = None


def encode_backup_codes(codes: list[str]) -> str:
    return json.dumps(list(codes))


def decode_backup_codes(raw: str) -> list[str]:
    """Parse a stored backup-code payload.

    JSON arrays are the current format; plain comma separated text is still
    read for rows written before that. Raises ValueError when unreadable.
    """
    text = (raw or "").strip()
    if not text:
        return []
    if text[0] in "[{":
        data = json.loads(text)
        if not isinstance(data, list) or not all(isinstance(c, str) for c in data):
            raise ValueError("backup codes payload is not a list of strings")
        return data
    return [c.strip() for c in text.split(",") if c.strip()]


def _get_user(db: Session, user_id: int) -> AppUser:
    user = db.get(AppUser, user_id)
    if user is None:
        raise UserNotFound(user_id)
    return user


def enable(db: Session, user_id: int, secret: str) -> list[str]:
    """Turn on 2FA with an already verified secret.

    Returns the freshly generated backup codes so the caller can show them
    once.
    """
    user = _get_user(db, user_id)
    codes = generate_backup_codes()
    with transaction(db):
        user.two_factor_enabled = True
        user.two_factor_secret = secret
        user.backup_codes = encode_backup_codes(codes)
    logger.info("Two-factor authentication enabled for user %s", user_id)
    return codes


def disable(db: Session, user_id: int) -> None:
    user = _get_user(db, user_id)
    with transaction(db):
        user.two_factor_enabled = False
        user.two_factor_secret = None
        user.backup_codes = None
    logger.info("Two-factor authentication disabled for user %s", user_id)


def get_status(db: Session, user_id: int) -> TwoFactorStatus:
    row = db.execute(
        select(AppUser.two_factor_enabled, AppUser.two_factor_secret, AppUser.backup_codes).where(AppUser.id == user_id)
    ).one_or_none()
    if row is None:
        raise UserNotFound(user_id)

    enabled, secret, raw_codes = row
    backup_codes = None
    if raw_codes:
        try:
            backup_codes = decode_backup_codes(raw_codes)
        except ValueError:
            # Keep the enabled flag readable even if the codes column is damaged.
            logger.warning("Could not parse stored backup codes for user %s", user_id, exc_info=True)
            backup_codes = None

    return TwoFactorStatus(enabled=enabled is True, secret=secret or None, backup_codes=backup_codes)


def consume_backup_code(db: Session, user_id: int, code: str) -> BackupCodeCheck:
    """Redeem one backup code for ``user_id``.

    The write only lands if the stored payload is still the one the match was
    made against; otherwise the row is re-read and the match retried.
    """
    attempts = max(1, int(settings.two_factor_cas_retries))
    stored: list[str] = []
    for _ in range(attempts):
        row = db.execute(
            select(AppUser.two_factor_enabled, AppUser.backup_codes).where(AppUser.id == user_id)
        ).one_or_none()
        if row is None:
            raise UserNotFound(user_id)

        enabled, raw = row
        if not enabled or not raw:
            return BackupCodeCheck(False, [])
        try:
            stored = decode_backup_codes(raw)
        except ValueError:
            logger.warning("Could not parse stored backup codes for user %s", user_id, exc_info=True)
            return BackupCodeCheck(False, [])

        check = verify_backup_code(code, stored)
        if not check.valid:
            return check

        with transaction(db):
            res = db.execute(
                update(AppUser)
                .where(AppUser.id == user_id, AppUser.backup_codes == raw)
                .values(backup_codes=encode_backup_codes(check.remaining_codes))
                .execution_options(synchronize_session=False)
            )
        if res.rowcount == 1:
            logger.info("Backup code redeemed for user %s (%s left)", user_id, len(check.remaining_codes))
            return check
        logger.info("Backup codes for user %s changed concurrently; retrying", user_id)

    logger.warning("Gave up redeeming backup code for user %s after %s attempts", user_id, attempts)
    return BackupCodeCheck(False, stored)
