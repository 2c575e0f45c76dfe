# backend/pharmapos/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/pharmapos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///pharmapos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Sales policy. TAX_RATE is a decimal string so it never passes through float.
    TAX_RATE = os.environ.get("PHARMAPOS_TAX_RATE", "0.16")
    CURRENCY = os.environ.get("PHARMAPOS_CURRENCY", "KES")
    RECEIPT_PREFIX = os.environ.get("PHARMAPOS_RECEIPT_PREFIX", "RCP")

    # Calendar dates in reports are matched in this zone
    REPORT_TIMEZONE = os.environ.get("PHARMAPOS_TIMEZONE", "UTC")

    # Catalog alerts
    EXPIRY_WARNING_DAYS = int(os.environ.get("PHARMAPOS_EXPIRY_WARNING_DAYS", "90"))

    # Lock contention retries around the checkout transaction
    STOCK_RETRY_ATTEMPTS = int(os.environ.get("PHARMAPOS_STOCK_RETRY_ATTEMPTS", "3"))

    # Auth
    BCRYPT_ROUNDS = int(os.environ.get("PHARMAPOS_BCRYPT_ROUNDS", "12"))
    SESSION_ABSOLUTE_HOURS = int(os.environ.get("PHARMAPOS_SESSION_ABSOLUTE_HOURS", "24"))
    SESSION_IDLE_HOURS = int(os.environ.get("PHARMAPOS_SESSION_IDLE_HOURS", "2"))

    CORS_ALLOWED_ORIGINS = {
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:4173",
        "http://127.0.0.1:4173",
    }

    VERSION = "1.0.0"


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    BCRYPT_ROUNDS = 4
    LOG_LEVEL = "DEBUG"
