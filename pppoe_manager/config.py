# pppoe_manager/config.py
from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


class Config:
    # =========================================================
    # Core Flask
    # =========================================================
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")

    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    if not SQLALCHEMY_DATABASE_URI:
        raise RuntimeError("DATABASE_URL is not set")

    # =========================================================
    # Rate limiting storage (Flask-Limiter)
    # =========================================================
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")

    # =========================================================
    # Logging
    # =========================================================
    # DEBUG/INFO/WARNING...; unset = INFO (DEBUG when app.debug)
    LOG_LEVEL = (os.getenv("LOG_LEVEL") or "").strip() or None

    # =========================================================
    # RouterOS API sessions
    # =========================================================
    # Socket timeout for connect + every read/write of one session.
    ROUTEROS_TIMEOUT_SECONDS = _env_int("ROUTEROS_TIMEOUT_SECONDS", 15)

    # RouterOS >= 6.43 expects plaintext login over the API port.
    ROUTEROS_PLAINTEXT_LOGIN = _env_bool("ROUTEROS_PLAINTEXT_LOGIN", True)

    # =========================================================
    # Expiration enforcement (APScheduler)
    # =========================================================
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", False)
    SCHEDULER_DRY_RUN = _env_bool("SCHEDULER_DRY_RUN", False)

    EXPIRY_INTERVAL_MINUTES = _env_int("EXPIRY_INTERVAL_MINUTES", 60)
    EXPIRY_RUN_ON_START = _env_bool("EXPIRY_RUN_ON_START", True)

    # >1 processes routers in parallel; accounts of one router stay sequential.
    EXPIRY_MAX_WORKERS = _env_int("EXPIRY_MAX_WORKERS", 1)

    # =========================================================
    # Account defaults
    # =========================================================
    DEFAULT_ACCOUNT_DAYS = _env_int("DEFAULT_ACCOUNT_DAYS", 30)
    DEFAULT_RECHARGE_DAYS = _env_int("DEFAULT_RECHARGE_DAYS", 30)

    if EXPIRY_INTERVAL_MINUTES <= 0:
        raise RuntimeError("EXPIRY_INTERVAL_MINUTES must be greater than 0")
    if ROUTEROS_TIMEOUT_SECONDS <= 0:
        raise RuntimeError("ROUTEROS_TIMEOUT_SECONDS must be greater than 0")
