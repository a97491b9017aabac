"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "modqueue-dev-secret-change-in-prod"


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: JWT secret must be changed in production
    if is_prod and settings.JWT_SECRET == DEFAULT_JWT_SECRET:
        logger.critical("JWT_SECRET is still the default! Set a real secret for production.")
        sys.exit(1)

    # Critical: CORS should not be * in production
    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if settings.REALTIME_QUEUE_SIZE < 16:
        warnings.append(
            f"REALTIME_QUEUE_SIZE={settings.REALTIME_QUEUE_SIZE} is very small — "
            "live clients will drop events and fall back to full resyncs"
        )

    if settings.READ_RETRY_ATTEMPTS < 1:
        warnings.append("READ_RETRY_ATTEMPTS < 1 — read paths will not retry transient storage errors")

    if settings.FANOUT_SWEEP_INTERVAL_MINUTES <= 0:
        warnings.append("FANOUT_SWEEP_INTERVAL_MINUTES <= 0 — notification reconciliation sweep disabled")

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
