"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authguard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or receive a Settings instance from the component that built you.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a JWT secret with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] Outside DEBUG mode a missing JWT_SECRET is a hard startup failure.
       A random per-process key would silently log everybody out on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'authguard_users.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "development"
    app_url: str = "http://localhost:3000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""
    # Empty means "reuse jwt_secret" for refresh tokens.
    jwt_refresh_secret: str = ""
    jwt_issuer: str = "authguard"
    jwt_audience: str = "authguard-users"
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    verification_token_expire_hours: int = 24

    # ------------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Email delivery ("console", "sendgrid" or "smtp")
    # ------------------------------------------------------------------

    email_provider: str = "console"
    email_from: str = "noreply@authguard.local"
    email_from_name: str = "authguard"
    sendgrid_api_key: str = ""
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Any `limits` storage URI: memory://, redis://host:6379, ...
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # Auth event log
    # ------------------------------------------------------------------

    auth_log_capacity: int = 1000
    auth_alert_capacity: int = 100
    auth_log_flush_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cookie_secure(self) -> bool:
        """Cookies carry the Secure flag in production only."""
        return self.is_production

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secrets(self) -> "Settings":
        """Enforce the JWT secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random access secret with a
            warning. Tokens will not survive restart -- acceptable locally.

        Production mode (DEBUG=false or not set): refuse to start if
            JWT_SECRET is missing.

        Both modes: reject configured secrets shorter than 32 characters.
        JWT_REFRESH_SECRET is optional; when present it obeys the same length rule.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT_SECRET. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        if self.jwt_refresh_secret and len(self.jwt_refresh_secret) < 32:
            raise ValueError("JWT_REFRESH_SECRET must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and hand it to api.components.build_components().
    """
    return Settings()
