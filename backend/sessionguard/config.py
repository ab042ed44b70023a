"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Optional
from urllib.parse import quote_plus

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "SessionGuard"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database (PostgreSQL)
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "sessionguard_db"
    POSTGRES_USER: str = "sessionguard"
    POSTGRES_PASSWORD: str = "sessionguard"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Signing secret
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    ALGORITHM: str = "HS256"
    BCRYPT_ROUNDS: int = 12

    # Admin identity marker
    ADMIN_EMAIL: str = ""
    ADMIN_PASSWORD: str = ""

    # Sessions and token families
    SESSION_COOKIE_NAME: str = "session"
    SESSION_EXPIRE_DAYS: int = 7
    REMEMBER_ME_EXPIRE_DAYS: int = 90
    MAX_ROTATION_COUNT: int = 100
    MAX_FAMILY_AGE_DAYS: int = 180

    # CSRF
    CSRF_COOKIE_NAME: str = "csrf-token"
    CSRF_HEADER_NAME: str = "X-CSRF-Token"

    # Account lockout
    LOCKOUT_THRESHOLD: int = 5
    LOCKOUT_DURATION_MINUTES: int = 5

    # Rate limiting (ceiling per window, window in seconds)
    LOGIN_RATE_LIMIT: int = 10
    LOGIN_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    LOGIN_IP_RATE_LIMIT: int = 30
    LOGIN_IP_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    REGISTRATION_RATE_LIMIT: int = 5
    REGISTRATION_RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60
    PASSWORD_RESET_RATE_LIMIT: int = 3
    PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60
    PASSWORD_RESET_EMAIL_RATE_LIMIT: int = 3
    PASSWORD_RESET_EMAIL_RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60
    EMAIL_VERIFICATION_RATE_LIMIT: int = 5
    EMAIL_VERIFICATION_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    REFRESH_RATE_LIMIT: int = 60
    REFRESH_RATE_LIMIT_WINDOW_SECONDS: int = 60

    # Single-use and signed tokens
    PASSWORD_RESET_TOKEN_EXPIRE_MINUTES: int = 60
    EMAIL_VERIFICATION_TOKEN_EXPIRE_MINUTES: int = 15

    # Password policy
    PASSWORD_MIN_LENGTH: int = 8
    PASSWORD_REQUIRE_UPPERCASE: bool = True
    PASSWORD_REQUIRE_NUMBER: bool = True

    # Cleanup sweeper
    SESSION_CLEANUP_GRACE_HOURS: int = 24
    SESSION_CLEANUP_RETENTION_DAYS: int = 90
    SESSION_CLEANUP_INTERVAL_HOURS: int = 24

    # Outbound calls (OAuth providers, email API)
    UPSTREAM_TIMEOUT_SECONDS: float = 15.0
    UPSTREAM_MAX_RETRIES: int = 2
    UPSTREAM_RETRY_DELAY_SECONDS: float = 1.0

    # OAuth providers
    OAUTH_REDIRECT_BASE_URL: str = "http://localhost:8000/api/v1/auth/oauth"
    GITHUB_CLIENT_ID: str = ""
    GITHUB_CLIENT_SECRET: str = ""
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Email delivery
    EMAIL_API_URL: str = "https://api.brevo.com/v3/smtp/email"
    EMAIL_API_KEY: str = ""
    EMAIL_SENDER_NAME: str = "SessionGuard"
    EMAIL_SENDER_ADDRESS: str = "no_reply@localhost"
    PUBLIC_BASE_URL: str = "http://localhost:3000"

    # Proxy
    TRUST_PROXY_HEADERS: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            CORS_ORIGINS=http://localhost:3000,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def is_admin_email(self, email: Optional[str]) -> bool:
        """Admin identity is marked by a configured email address."""
        if not email or not self.ADMIN_EMAIL:
            return False
        return email.strip().lower() == self.ADMIN_EMAIL.strip().lower()

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "sessionguard.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if not self.is_production:
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "your-super-secret-key-change-this-in-production",
            "change-me",
        }
        insecure_admin_passwords = {
            "admin123",
            "change_this_password_immediately",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.ADMIN_PASSWORD and (
            self.ADMIN_PASSWORD in insecure_admin_passwords or len(self.ADMIN_PASSWORD) < 10
        ):
            raise ValueError(
                "Insecure ADMIN_PASSWORD for production. Set a strong admin password before startup."
            )

        if self.BCRYPT_ROUNDS < 10:
            raise ValueError("BCRYPT_ROUNDS below 10 is not allowed in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
