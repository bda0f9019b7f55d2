# backend/storefront/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storefront.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location (postgres in production)
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Checkout pricing
    TAX_RATE_BPS = _int_env("TAX_RATE_BPS", 0)
    SHIPPING_FLAT_CENTS = _int_env("SHIPPING_FLAT_CENTS", 0)
    FREE_SHIPPING_THRESHOLD_CENTS = _int_env("FREE_SHIPPING_THRESHOLD_CENTS", 0)  # 0 = never free

    # Payment gateway: "mock" echoes client-reported payments, "portone" calls the real API
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "mock")
    PORTONE_API_URL = os.environ.get("PORTONE_API_URL", "https://api.iamport.kr")
    PORTONE_API_KEY = os.environ.get("PORTONE_API_KEY", "")
    PORTONE_API_SECRET = os.environ.get("PORTONE_API_SECRET", "")
    PORTONE_WEBHOOK_SECRET = os.environ.get("PORTONE_WEBHOOK_SECRET", "dev-webhook-secret")
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))

    # Shared secret with the identity provider front door (signs login assertions)
    IDENTITY_SHARED_SECRET = os.environ.get("IDENTITY_SHARED_SECRET", "dev-identity-secret")

    # Object storage (S3-compatible, e.g. Cloudflare R2). Empty bucket = placeholder mode.
    STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "")
    STORAGE_ENDPOINT_URL = os.environ.get("STORAGE_ENDPOINT_URL", "")
    STORAGE_ACCESS_KEY_ID = os.environ.get("STORAGE_ACCESS_KEY_ID", "")
    STORAGE_SECRET_ACCESS_KEY = os.environ.get("STORAGE_SECRET_ACCESS_KEY", "")
    STORAGE_PUBLIC_URL = os.environ.get("STORAGE_PUBLIC_URL", "")
    MAX_UPLOAD_BYTES = _int_env("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)

    CORS_ALLOWED_ORIGINS = {
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ).split(",")
        if origin.strip()
    }
