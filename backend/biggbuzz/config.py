# backend/biggbuzz/config.py
from __future__ import annotations
import os
from datetime import timedelta


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/biggbuzz.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///biggbuzz.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Signed subscriber/operator credentials
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-jwt-secret-key-32-characters-minimum-length")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=int(os.environ.get("JWT_EXPIRES_DAYS", "30")))
    JWT_TOKEN_LOCATION = ["headers"]

    # Identity and registration policy
    MINIMUM_AGE = 18
    OTP_TTL_MINUTES = int(os.environ.get("OTP_TTL_MINUTES", "10"))
    OTP_MAX_ATTEMPTS = int(os.environ.get("OTP_MAX_ATTEMPTS", "5"))
    PENDING_REGISTRATION_TTL_MINUTES = int(os.environ.get("PENDING_REGISTRATION_TTL_MINUTES", "30"))

    # Checkout pricing (cents / basis points)
    TAX_RATE_BPS = int(os.environ.get("TAX_RATE_BPS", "1000"))
    DELIVERY_FEES_CENTS = {
        "EXPRESS": 5000,
        "STANDARD": 2500,
        "PICKUP": 0,
    }

    # Outbound SMS / WhatsApp
    SMS_PROVIDER = os.environ.get("SMS_PROVIDER", "console")  # console | clickatell
    CLICKATELL_API_KEY = os.environ.get("CLICKATELL_API_KEY")
    CLICKATELL_API_URL = os.environ.get("CLICKATELL_API_URL", "https://platform.clickatell.com/v1/message")
    SMS_MAX_ATTEMPTS = int(os.environ.get("SMS_MAX_ATTEMPTS", "3"))
    SMS_BACKOFF_BASE = float(os.environ.get("SMS_BACKOFF_BASE", "1.0"))
    SMS_TIMEOUT_SECONDS = float(os.environ.get("SMS_TIMEOUT_SECONDS", "10"))


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    JWT_SECRET_KEY = "test-jwt-secret-key-32-characters-minimum"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SMS_PROVIDER = "console"
    SMS_BACKOFF_BASE = 0.0
