"""ModQueue API — FastAPI application for the moderation report lifecycle."""
from __future__ import annotations

import logging

from src.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import engine, get_session, import_all_tables
from src.db.tables import Base
from src.errors import register_error_handlers
from src.services.realtime import TOPICS, bus as realtime_bus
from src.services.scheduler import start_scheduler, stop_scheduler
from config.settings import settings

VERSION = "0.1.0"

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Scrub sensitive data
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup and run the fan-out reconciliation sweep."""
    # Validate configuration before anything else
    from src.startup_checks import validate_settings
    validate_settings()

    import_all_tables()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    if settings.FANOUT_SWEEP_INTERVAL_MINUTES > 0:
        start_scheduler(interval_minutes=settings.FANOUT_SWEEP_INTERVAL_MINUTES)

    yield

    logger.info("Shutting down — draining connections...")
    stop_scheduler()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="ModQueue API",
    version=VERSION,
    description="Moderation report lifecycle: submission, staff claims, resolution and notifications",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
from src.middleware.metrics import MetricsMiddleware
app.add_middleware(MetricsMiddleware)

# Request ID tracing
from src.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


# ---- Auth routes ----
from src.auth import (
    SignUpRequest, LoginRequest, RefreshRequest, create_tokens, hash_password, verify_password,
    lift_expired_suspension, require_user, _verify,
)
from src.db.user_tables import UserRow


def _user_out(user: UserRow) -> dict:
    return {"id": user.id, "email": user.email, "display_name": user.display_name, "role": user.role}


@app.post("/api/v1/auth/signup")
async def signup(req: SignUpRequest, session: AsyncSession = Depends(get_session)):
    """Create a new user account."""
    existing = await session.execute(select(UserRow).where(UserRow.email == req.email))
    if existing.scalar_one_or_none():
        raise HTTPException(409, "Email already registered")
    user = UserRow(
        email=req.email,
        password_hash=hash_password(req.password),
        display_name=req.display_name,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    tokens = create_tokens(user.id)
    return {"user": _user_out(user), **tokens}


@app.post("/api/v1/auth/login")
async def login(req: LoginRequest, session: AsyncSession = Depends(get_session)):
    """Log in with email + password, returns JWT tokens."""
    result = await session.execute(select(UserRow).where(UserRow.email == req.email))
    user = result.scalar_one_or_none()
    if not user or not user.password_hash or not verify_password(req.password, user.password_hash):
        raise HTTPException(401, "Invalid email or password")
    await lift_expired_suspension(session, user)
    if not user.is_active:
        if user.suspended_until is not None:
            raise HTTPException(403, "Account suspended")
        raise HTTPException(403, "Account disabled")
    tokens = create_tokens(user.id)
    return {"user": _user_out(user), **tokens}


@app.post("/api/v1/auth/refresh")
async def refresh_token(req: RefreshRequest, session: AsyncSession = Depends(get_session)):
    """Exchange a valid refresh token for new access + refresh tokens."""
    payload = _verify(req.refresh_token)
    if not payload or payload.get("type") != "refresh":
        raise HTTPException(401, "Invalid or expired refresh token")
    result = await session.execute(select(UserRow).where(UserRow.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if user is not None:
        await lift_expired_suspension(session, user)
    if not user or not user.is_active:
        raise HTTPException(401, "User not found")
    tokens = create_tokens(user.id)
    return {"user": _user_out(user), **tokens}


@app.get("/api/v1/me")
async def me(user: UserRow = Depends(require_user)):
    return _user_out(user)


# ---- Moderation routes ----
from src.api.moderation import router as moderation_router
app.include_router(moderation_router)

from src.api.notifications import router as notifications_router
app.include_router(notifications_router)

from src.api.realtime import router as realtime_router
app.include_router(realtime_router)


async def _db_ok(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        return False
    return True


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check — database plus live realtime subscribers per topic."""
    db_ok = await _db_ok(session)
    return {
        "status": "ok" if db_ok else "degraded",
        "db": "connected" if db_ok else "error",
        "subscribers": {topic: realtime_bus.subscriber_count(topic) for topic in TOPICS},
        "version": VERSION,
    }


@app.get("/ready")
async def readiness(session: AsyncSession = Depends(get_session)):
    """Readiness probe for orchestrators. 503 until the database answers."""
    if not await _db_ok(session):
        return JSONResponse(status_code=503, content={"ready": False, "reason": "database unavailable"})
    return {"ready": True}


register_error_handlers(app)
