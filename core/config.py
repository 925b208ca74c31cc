"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CampusGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, login_rate_limit -> LOGIN_RATE_LIMIT).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. Used for the DEBUG-conditional secret policy and to reject
      unparseable rate-limit strings at startup rather than on first request.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  REFRESH_SECRET_KEY signs refresh tokens only. When unset it is derived from
  SECRET_KEY so an access token can never be replayed as a refresh token even
  in single-secret deployments (the "type" claim is also checked).

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
devices/, ratelimit/ or services/.
"""

import hashlib
import logging
import secrets
from functools import lru_cache

from limits import parse
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("campusguard.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    refresh_secret_key: str = ""
    database_url: str = "sqlite:///campusguard.db"
    # Empty means single-process in-memory counters (dev and tests only).
    redis_url: str = ""

    # ------------------------------------------------------------------
    # Tokens and credentials
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    max_failed_logins: int = 5
    lockout_seconds: int = 30 * 60
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Rate limiting (limits-style rate strings)
    # ------------------------------------------------------------------

    global_rate_limit: str = "100/15 minutes"
    login_rate_limit: str = "5/5 minutes"
    register_rate_limit: str = "3/hour"
    sensitive_rate_limit: str = "10/15 minutes"
    # Only enable behind a proxy that overwrites X-Forwarded-For.
    trust_forwarded_for: bool = False

    # ------------------------------------------------------------------
    # Device policy (paid tier)
    # ------------------------------------------------------------------

    device_warn_at: int = 3
    device_lock_at: int = 6

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the signing secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.refresh_secret_key:
            self.refresh_secret_key = hashlib.sha256(f"refresh:{self.secret_key}".encode()).hexdigest()
        if len(self.refresh_secret_key) < 32:
            raise ValueError("REFRESH_SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_rate_limits(self) -> "Settings":
        """Parse every rate string once so typos fail at startup."""
        for name in ("global_rate_limit", "login_rate_limit", "register_rate_limit", "sensitive_rate_limit"):
            value = getattr(self, name)
            try:
                parse(value)
            except ValueError as exc:
                raise ValueError(f"{name.upper()} is not a valid rate limit: {value!r}") from exc
        if not 0 < self.device_warn_at < self.device_lock_at:
            raise ValueError("DEVICE_WARN_AT must be positive and lower than DEVICE_LOCK_AT.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
