# backend/possync/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/possync.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///possync.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Sales policy fallbacks for branches that have no branch_sales_policies row
    DEFAULT_FX_RATE_KHR_PER_USD = os.environ.get("DEFAULT_FX_RATE_KHR_PER_USD", "4100")
    DEFAULT_KHR_ROUNDING_ENABLED = _env_bool("DEFAULT_KHR_ROUNDING_ENABLED", True)
    DEFAULT_KHR_ROUNDING_MODE = os.environ.get("DEFAULT_KHR_ROUNDING_MODE", "NEAREST")
    DEFAULT_KHR_ROUNDING_GRANULARITY = int(os.environ.get("DEFAULT_KHR_ROUNDING_GRANULARITY", "100"))

    # Offline sync
    SYNC_MAX_BATCH_SIZE = int(os.environ.get("SYNC_MAX_BATCH_SIZE", "100"))

    # Outbox delivery
    OUTBOX_DISPATCH_LIMIT = int(os.environ.get("OUTBOX_DISPATCH_LIMIT", "100"))
    OUTBOX_RETENTION_DAYS = int(os.environ.get("OUTBOX_RETENTION_DAYS", "7"))

    # Manual cash movements: paid-outs above these need manager approval
    CASH_ALLOW_PAID_OUT = _env_bool("CASH_ALLOW_PAID_OUT", True)
    CASH_PAID_OUT_LIMIT_USD = os.environ.get("CASH_PAID_OUT_LIMIT_USD", "500")
    CASH_PAID_OUT_LIMIT_KHR = os.environ.get("CASH_PAID_OUT_LIMIT_KHR", "2000000")
