"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///modqueue.db")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "modqueue-dev-secret-change-in-prod")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Evidence uploads (local disk; swap for object storage in prod)
    EVIDENCE_DIR = os.getenv("EVIDENCE_DIR", "data/evidence")
    MAX_EVIDENCE_BYTES = int(os.getenv("MAX_EVIDENCE_BYTES", str(10 * 1024 * 1024)))

    # Realtime bus
    REALTIME_QUEUE_SIZE = int(os.getenv("REALTIME_QUEUE_SIZE", "256"))
    REALTIME_KEEPALIVE_SECONDS = float(os.getenv("REALTIME_KEEPALIVE_SECONDS", "15"))

    # Notification fan-out reconciliation sweep
    FANOUT_SWEEP_INTERVAL_MINUTES = int(os.getenv("FANOUT_SWEEP_INTERVAL_MINUTES", "10"))
    FANOUT_SWEEP_LOOKBACK_HOURS = int(os.getenv("FANOUT_SWEEP_LOOKBACK_HOURS", "72"))

    # Read-path retries against the record store
    READ_RETRY_ATTEMPTS = int(os.getenv("READ_RETRY_ATTEMPTS", "3"))
    READ_RETRY_BASE_DELAY = float(os.getenv("READ_RETRY_BASE_DELAY", "0.05"))

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
