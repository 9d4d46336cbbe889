# backend/murimi_pos/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/murimi_pos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///murimi_pos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # bcrypt cost factor (tests lower it)
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    # Till sessions: one trading day, ended early by a long idle spell
    SESSION_ABSOLUTE_HOURS = _env_int("SESSION_ABSOLUTE_HOURS", 14)
    SESSION_IDLE_MINUTES = _env_int("SESSION_IDLE_MINUTES", 120)

    # Business rules
    VAT_RATE_PERCENT = _env_int("VAT_RATE_PERCENT", 16)
    VOID_WINDOW_HOURS = _env_int("VOID_WINDOW_HOURS", 24)
    CURRENCY = os.environ.get("CURRENCY", "KES")

    # Offline sync queue
    OFFLINE_SYNC_RETENTION_DAYS = _env_int("OFFLINE_SYNC_RETENTION_DAYS", 7)
    OFFLINE_SYNC_MAX_RETRIES = _env_int("OFFLINE_SYNC_MAX_RETRIES", 3)

    # Rate limiting (counters live in the shared database)
    RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"
    RATE_LIMIT_MAX_REQUESTS = _env_int("RATE_LIMIT_MAX_REQUESTS", 100)
    RATE_LIMIT_WINDOW_SECONDS = _env_int("RATE_LIMIT_WINDOW_SECONDS", 60)

    # M-Pesa Daraja API
    MPESA_ENVIRONMENT = os.environ.get("MPESA_ENVIRONMENT", "sandbox")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
    MPESA_BUSINESS_SHORT_CODE = os.environ.get("MPESA_BUSINESS_SHORT_CODE", "174379")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
    MPESA_AUTH_TOKEN_URL = os.environ.get(
        "MPESA_AUTH_TOKEN_URL",
        "https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials",
    )
    MPESA_STK_PUSH_URL = os.environ.get(
        "MPESA_STK_PUSH_URL",
        "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest",
    )
    MPESA_CALLBACK_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")
    MPESA_TIMEOUT_SECONDS = float(os.environ.get("MPESA_TIMEOUT_SECONDS", "30"))

    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
        if origin.strip()
    ]
