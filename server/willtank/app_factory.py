from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select

from .config import settings
from .db import Base, SessionLocal, engine
from .routers import auth, extraction, two_factor
from .services.two_factor_accounts import UserNotFound

logger = logging.getLogger(__name__)


def _startup() -> None:
    from . import models

    if bool(settings.db_auto_create_tables):
        Base.metadata.create_all(bind=engine)
        logger.info("DB auto-create enabled: ensured database tables exist")
    else:
        logger.info("DB auto-create disabled: expecting schema to be managed by Alembic")
        if bool(settings.db_require_migrations_up_to_date):
            from .services.migrations_check import assert_db_up_to_date

            assert_db_up_to_date(engine)
            logger.info("Alembic migration status OK (DB is at head)")

    # Seed an initial account (configurable via env)
    username = (settings.bootstrap_username or "").strip().lower()
    password = settings.bootstrap_password
    if not username or not password:
        return

    from .services.passwords import hash_password

    db = SessionLocal()
    try:
        existing = db.execute(select(models.AppUser).where(models.AppUser.username == username)).scalar_one_or_none()
        if not existing:
            db.add(models.AppUser(username=username, password_hash=hash_password(password), is_active=True))
            db.commit()
            logger.info("Seeded initial user '%s'", username)
    except Exception:
        logger.exception("Failed to seed initial user")
        db.rollback()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    _startup()
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="WillTank API", lifespan=lifespan)

    if settings.cors_allow_origins or settings.cors_allow_origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_origin_regex=settings.cors_allow_origin_regex,
            allow_methods=settings.cors_allow_methods,
            allow_headers=settings.cors_allow_headers,
            allow_credentials=bool(settings.cors_allow_credentials),
        )

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    @app.exception_handler(UserNotFound)
    async def user_not_found_handler(request: Request, exc: UserNotFound):
        return JSONResponse(status_code=404, content={"detail": "User not found"})

    @app.middleware("http")
    async def csrf_middleware(request: Request, call_next):
        """CSRF protection for cookie-authenticated requests.

        Double-submit cookie: require X-CSRF-Token to match willtank_csrf cookie
        on state-changing requests.
        """

        from .deps import CSRF_COOKIE, SESSION_COOKIE

        path = request.url.path or ""
        method = (request.method or "GET").upper()

        # login/register have no session yet; logout stays reachable to avoid lock-in
        if path == "/health" or path in ("/api/login", "/api/register", "/api/logout"):
            return await call_next(request)
        if method in ("GET", "HEAD", "OPTIONS"):
            return await call_next(request)

        if request.cookies.get(SESSION_COOKIE):
            csrf_cookie = request.cookies.get(CSRF_COOKIE)
            csrf_header = request.headers.get("X-CSRF-Token")
            if not csrf_cookie or not csrf_header or csrf_cookie != csrf_header:
                return JSONResponse(status_code=403, content={"detail": "CSRF token missing or invalid"})

        return await call_next(request)

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        resp = await call_next(request)
        if not bool(settings.security_headers_enabled):
            return resp

        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "same-origin")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        # Responses may carry TOTP secrets and backup codes.
        if request.url.path.startswith("/api/2fa"):
            resp.headers.setdefault("Cache-Control", "no-store")

        xfp = (request.headers.get("x-forwarded-proto") or "").lower()
        is_https = (request.url.scheme == "https") or (xfp == "https")
        if is_https and bool(settings.ui_cookie_secure):
            resp.headers.setdefault("Strict-Transport-Security", "max-age=15552000")
        return resp

    app.include_router(auth.router)
    app.include_router(two_factor.router)
    app.include_router(extraction.router)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "willtank-api", "ts": datetime.now(timezone.utc).isoformat()}

    return app
