# backend/stockledger/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the app by default; Postgres in production
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Webhook authentication. A channel accepts either its shared secret
    # (X-Webhook-Secret header) or an HMAC-SHA256 signature of the raw body.
    WEBHOOK_SECRET_SHOPEE = os.environ.get("WEBHOOK_SECRET_SHOPEE", "")
    WEBHOOK_SECRET_TIKTOK = os.environ.get("WEBHOOK_SECRET_TIKTOK", "")
    SHOPEE_PARTNER_KEY = os.environ.get("SHOPEE_PARTNER_KEY", "")
    TIKTOK_APP_SECRET = os.environ.get("TIKTOK_APP_SECRET", "")

    # Outlet auto-created when an operation omits outlet_id and none exists
    DEFAULT_WAREHOUSE_NAME = os.environ.get("DEFAULT_WAREHOUSE_NAME", "Gudang")

    ADJUSTMENT_REASON_MIN_LENGTH = _env_int("ADJUSTMENT_REASON_MIN_LENGTH", 3)
    CSV_PREVIEW_SAMPLE_SIZE = _env_int("CSV_PREVIEW_SAMPLE_SIZE", 5)

    # Retries for lock/deadlock failures (see services/concurrency.py)
    DB_RETRY_ATTEMPTS = _env_int("DB_RETRY_ATTEMPTS", 3)

    # Outbox delivery gives up after this many failed attempts
    OUTBOX_MAX_ATTEMPTS = _env_int("OUTBOX_MAX_ATTEMPTS", 5)

    SESSION_TTL_HOURS = _env_int("SESSION_TTL_HOURS", 24)

    # Dashboard origins allowed to call the API from a browser
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip() for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        ).split(",") if o.strip()
    )
