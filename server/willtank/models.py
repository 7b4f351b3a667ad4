from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, JSON, Text, Boolean
from sqlalchemy.sql import func
from .db import Base


class AppUser(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, unique=True, nullable=False, index=True)  # email address
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Two-factor authentication (TOTP). Secret and backup codes are either
    # both set (enabled) or both NULL (disabled).
    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    two_factor_secret = Column(Text)  # base32
    # JSON array of "XXXX-XXXX" strings; kept as text so a corrupt payload is detectable.
    backup_codes = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class AppSession(Base):
    __tablename__ = "app_sessions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_sha256 = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    # Set once this session presented a valid TOTP/backup code (or at login when 2FA is off).
    two_factor_verified_at = Column(DateTime(timezone=True))
    # Unconfirmed enrollment secret between /2fa/generate and /2fa/verify.
    pending_two_factor_secret = Column(Text)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False, index=True)
    actor_user_id = Column(Integer, index=True)
    actor_username = Column(String)
    ip_address = Column(String)
    user_agent = Column(String)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
