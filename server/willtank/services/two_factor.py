from __future__ import annotations

import base64
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Sequence

import pyotp
import qrcode

from ..config import settings

logger = logging.getLogger(__name__)

BACKUP_CODE_SEPARATOR = "-"
_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True)
class GeneratedSecret:
    secret: str
    otpauth_url: str
    qr_code_data_url: str


@dataclass(frozen=True)
class BackupCodeCheck:
    valid: bool
    remaining_codes: list[str] = field(default_factory=list)


def otpauth_uri(account_label: str, secret_b32: str, issuer: str | None = None) -> str:
    issuer = issuer or settings.two_factor_issuer
    return pyotp.TOTP(secret_b32).provisioning_uri(name=account_label, issuer_name=issuer)


def qr_data_url(uri: str) -> str:
    img = qrcode.make(uri)
    buf = BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def generate_secret(account_label: str, issuer: str | None = None) -> GeneratedSecret:
    """Create a fresh TOTP secret and its scannable enrollment artifact.

    Failures in secret generation or QR encoding are not caught here.
    """
    secret = pyotp.random_base32()
    uri = otpauth_uri(account_label, secret, issuer)
    return GeneratedSecret(secret=secret, otpauth_url=uri, qr_code_data_url=qr_data_url(uri))


def verify_token(code: str, secret_b32: str, *, for_time: datetime | int | None = None) -> bool:
    """Check a TOTP code against a stored secret.

    Accepts the previous, current and next time step. Never raises:
    anything unexpected counts as a failed verification.
    """
    try:
        normalized = _NON_DIGITS.sub("", code or "")
        if not normalized or not secret_b32:
            return False
        totp = pyotp.TOTP(secret_b32)
        return bool(totp.verify(normalized, for_time=for_time, valid_window=settings.two_factor_valid_window))
    except Exception:
        logger.warning("TOTP verification failed with an internal error", exc_info=True)
        return False


def _new_backup_code() -> str:
    raw = secrets.token_bytes(4).hex().upper()
    return f"{raw[:4]}{BACKUP_CODE_SEPARATOR}{raw[4:]}"


def generate_backup_codes(count: int | None = None) -> list[str]:
    n = settings.two_factor_backup_code_count if count is None else int(count)
    codes: list[str] = []
    while len(codes) < n:
        code = _new_backup_code()
        # 32 bits per code; redraw the (rare) duplicate within a batch.
        if code not in codes:
            codes.append(code)
    return codes


def normalize_backup_code(code: str) -> str:
    return _WHITESPACE.sub("", (code or "").upper())


def verify_backup_code(code: str, stored_codes: Sequence[str]) -> BackupCodeCheck:
    """Find a submitted backup code and remove it from the stored list.

    The submission matches a stored code written either with or without its
    separator. On a miss the stored list is returned unchanged.
    """
    stored = list(stored_codes or [])
    normalized = normalize_backup_code(code)
    if not normalized:
        return BackupCodeCheck(False, stored)

    for idx, candidate in enumerate(stored):
        if candidate == normalized or candidate.replace(BACKUP_CODE_SEPARATOR, "") == normalized:
            return BackupCodeCheck(True, stored[:idx] + stored[idx + 1 :])

    return BackupCodeCheck(False, stored)
