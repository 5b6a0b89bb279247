"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_private_key_path -> JWT_PRIVATE_KEY_PATH).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Production mode refuses to start without a signing key;
      dev mode (DEBUG=true) is allowed to run on an ephemeral key that is
      generated at startup (see auth/keys.py).

Settings are read only by the api/ assembly layer (lifespan, middleware,
limiter) and handed to components through core.resources.Resources.
auth/, cache/ and rbac/ never call get_settings() themselves.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, cache/, or rbac/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
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
    database_url: str = "sqlite:///gatekeeper.db"
    # Empty string = no cache backend (nil-store mode). The entity cache then
    # always misses and the refresh-token store reports InternalError.
    redis_url: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # PEM-encoded private key. The signing algorithm is derived from the key
    # type, never configured separately.
    jwt_private_key_path: str = ""
    jwt_leeway_seconds: int = 0
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    # When true, a refresh attempt with a stale (rotated) token also deletes
    # the currently stored refresh token, forcing the account to log in again.
    revoke_on_refresh_reuse: bool = False

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Cache-aside TTLs (seconds)
    # ------------------------------------------------------------------

    cache_ttl_seconds: int = 15 * 60
    cache_list_ttl_seconds: int = 60
    cache_jitter_seconds: int = 60

    # ------------------------------------------------------------------
    # RBAC bootstrap
    # ------------------------------------------------------------------

    default_role: str = "user"
    seed_on_startup: bool = True

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_security(self) -> "Settings":
        """Enforce key and hashing policy at startup.

        Production mode (DEBUG=false or not set): refuse to start without
            JWT_PRIVATE_KEY_PATH. An ephemeral key would invalidate every
            issued token on restart.

        Dev mode (DEBUG=true): a missing key path is allowed; the lifespan
            generates a throwaway P-256 key and logs a warning.

        Both modes: bcrypt cost must be within the range bcrypt accepts.
        """
        if not self.jwt_private_key_path and not self.debug:
            raise ValueError(
                "JWT_PRIVATE_KEY_PATH is required in production mode. "
                "Set it in your environment or .env file. "
                "To run in development mode, set DEBUG=true."
            )
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.cache_jitter_seconds < 1:
            raise ValueError("CACHE_JITTER_SECONDS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
