"""Application configuration management"""

import json
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

from app.core.exceptions import ConfigIncompleteError
from app.services.account_lockout import LockoutConfig
from app.services.repositories import AppleConfig
from app.services.session_policy import SessionConfig

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Sign in with Apple Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database
    DATABASE_URL: str = "sqlite:///./apple_auth.db"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off

    # Apple Sign-In
    APPLE_CLIENT_ID: str = ""
    APPLE_TEAM_ID: str = ""
    APPLE_KEY_ID: str = ""
    APPLE_PRIVATE_KEY: str = ""
    APPLE_REDIRECT_URI: str = ""
    APPLE_TOKEN_TIMEOUT_SECONDS: float = 15.0
    APPLE_JWKS_TIMEOUT_SECONDS: float = 10.0
    JWKS_CACHE_TTL_SECONDS: int = 3600

    # First-party session tokens
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    ALGORITHM: str = "HS256"
    JWT_ISSUER: Optional[str] = None
    JWT_AUDIENCE: Optional[str] = None
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Cookies
    COOKIE_PREFIX: str = "auth"
    COOKIE_SECURE: bool = True
    COOKIE_SAMESITE: str = "strict"
    COOKIE_DOMAIN: Optional[str] = None
    COOKIE_PATH: str = "/"
    OAUTH_COOKIE_MAX_AGE_SECONDS: int = 600

    # Account lockout
    LOCKOUT_THRESHOLD: int = 5
    LOCKOUT_BASE_MINUTES: int = 15
    LOCKOUT_MAX_HOURS: int = 24
    LOCKOUT_WINDOW_MINUTES: int = 15

    # Sessions
    MAX_CONCURRENT_SESSIONS: int = 5
    REVOKE_ON_USER_AGENT_CHANGE: bool = True

    # Rate Limiting (requests per minute, per client IP)
    RATE_LIMIT_APPLE_PER_MINUTE: int = 10
    RATE_LIMIT_CALLBACK_PER_MINUTE: int = 5
    RATE_LIMIT_REFRESH_PER_MINUTE: int = 20
    RATE_LIMIT_LOGOUT_PER_MINUTE: int = 10
    RATE_LIMIT_SESSIONS_PER_MINUTE: int = 20
    RATE_LIMIT_ME_PER_MINUTE: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

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

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def apple_config(self) -> AppleConfig:
        return AppleConfig(
            client_id=self.APPLE_CLIENT_ID,
            team_id=self.APPLE_TEAM_ID,
            key_id=self.APPLE_KEY_ID,
            private_key=self.APPLE_PRIVATE_KEY,
            redirect_uri=self.APPLE_REDIRECT_URI,
        )

    def lockout_config(self) -> LockoutConfig:
        return LockoutConfig(
            threshold=self.LOCKOUT_THRESHOLD,
            base_duration=timedelta(minutes=self.LOCKOUT_BASE_MINUTES),
            max_duration=timedelta(hours=self.LOCKOUT_MAX_HOURS),
            attempt_window=timedelta(minutes=self.LOCKOUT_WINDOW_MINUTES),
        )

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            max_concurrent_sessions=self.MAX_CONCURRENT_SESSIONS,
            revoke_on_user_agent_change=self.REVOKE_ON_USER_AGENT_CHANGE,
        )

    def cookie_name(self, suffix: str) -> str:
        return f"{self.COOKIE_PREFIX}_{suffix}"

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
            ConfigIncompleteError: If Apple credentials are missing.
        """
        if self.ENVIRONMENT.lower() != "production":
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "change-me",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        missing = [
            name
            for name in ("APPLE_CLIENT_ID", "APPLE_TEAM_ID", "APPLE_KEY_ID", "APPLE_PRIVATE_KEY", "APPLE_REDIRECT_URI")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigIncompleteError(
                f"Apple Sign-In configuration is incomplete: missing {', '.join(missing)}"
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
