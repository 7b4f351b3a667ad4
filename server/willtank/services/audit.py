from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from ..models import AppUser, AuditEvent

logger = logging.getLogger(__name__)


def client_ip(request: Request | None) -> str | None:
    if not request:
        return None
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    xri = request.headers.get("X-Real-IP")
    if xri:
        return xri.strip()
    return request.client.host if request.client else None


def user_agent(request: Request | None) -> str | None:
    if not request:
        return None
    ua = request.headers.get("User-Agent")
    return ua[:500] if ua else None


def log_event(
    db: Session,
    *,
    action: str,
    actor: AppUser | None,
    request: Request | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Best-effort audit log.

    Must never raise (audit logging must not break the primary action).
    The event is only added to the session; the caller's transaction commits it.
    """

    try:
        db.add(
            AuditEvent(
                action=(action or "").strip()[:120],
                actor_user_id=getattr(actor, "id", None) if actor else None,
                actor_username=getattr(actor, "username", None) if actor else None,
                ip_address=client_ip(request),
                user_agent=user_agent(request),
                meta=(meta or {}),
            )
        )
    except Exception:
        logger.exception("Failed to record audit event %s", action)
