"""
Application configuration — environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv()


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    # SQLite file holding the record tree and the audit log
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "school_portal.db"))

    # Session security
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    PERMANENT_SESSION_LIFETIME = 86400

    # Attachment blob store
    UPLOAD_DIR = os.environ.get("UPLOAD_DIR", str(BASE_DIR / "uploads"))
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16 MB

    # Generative AI
    GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY", "")
    GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")

    # Access codes
    ADMIN_LOGIN_CODE = os.environ.get("ADMIN_LOGIN_CODE", "")
    PRINCIPAL_LOGIN_CODE = os.environ.get("PRINCIPAL_LOGIN_CODE", "")
    PRINCIPAL_ID = os.environ.get("PRINCIPAL_ID", "principal_user_01")
    PRINCIPAL_NAME = os.environ.get("PRINCIPAL_NAME", "")
    SCHOOL_NAME = os.environ.get("SCHOOL_NAME", "")
    SCHOOL_LEVEL = os.environ.get("SCHOOL_LEVEL", "متوسطة")
    PRINCIPAL_STUDENT_CODE_LIMIT = int(os.environ.get("PRINCIPAL_STUDENT_CODE_LIMIT", "999999"))

    DEFAULT_ACADEMIC_YEAR = os.environ.get("DEFAULT_ACADEMIC_YEAR", "2025-2026")

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Redis (cache + rate limiting)
    REDIS_URL = os.environ.get("REDIS_URL", "")
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")
    SESSION_COOKIE_SECURE = True

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if not cls.PRINCIPAL_LOGIN_CODE and not cls.ADMIN_LOGIN_CODE:
            errors.append("Set PRINCIPAL_LOGIN_CODE or ADMIN_LOGIN_CODE so someone can sign in.")

        if not cls.GOOGLE_API_KEY:
            warnings.warn("GOOGLE_API_KEY is not set — AI scheduling and question generation will be unavailable.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
