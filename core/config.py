"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for UserDir happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_secret -> ACCESS_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates signing secrets with a warning; production
      mode refuses to start without them.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. HS256 signing and
       the HMAC digests of stored refresh/deletion tokens rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing ACCESS_SECRET or
       REFRESH_SECRET is a hard startup failure.

  [S1] ACCESS_SECRET and REFRESH_SECRET must differ. A shared key would let a
       leaked access token verify as a refresh token.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("userdir.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'userdir.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (given DEBUG=true).
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    access_secret: str = ""
    refresh_secret: str = ""
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 10

    # ------------------------------------------------------------------
    # Account deletion
    # ------------------------------------------------------------------

    deletion_token_expire_seconds: int = 300
    # When true, DELETE /auth/delete-account requires a token obtained from
    # POST /auth/delete-account/request plus confirmation "DELETE".
    require_deletion_token: bool = False

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    default_page_size: int = 10
    max_page_size: int = 100

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, v: int) -> int:
        # bcrypt.gensalt() accepts 4..31
        if v < 4 or v > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31")
        return v

    @field_validator("access_token_expire_seconds", "refresh_token_expire_seconds", "deletion_token_expire_seconds")
    @classmethod
    def validate_positive_lifetime(cls, v: int) -> int:
        if v < 1:
            raise ValueError("token lifetimes must be at least 1 second")
        return v

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce signing-secret policy [M6][M7][S1].

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.
        """
        for name in ("access_secret", "refresh_secret"):
            value = getattr(self, name)
            if not value:
                if self.debug:
                    setattr(self, name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_secret == self.refresh_secret:
            raise ValueError("ACCESS_SECRET and REFRESH_SECRET must differ.")
        if self.refresh_token_expire_seconds <= self.access_token_expire_seconds:
            raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must exceed ACCESS_TOKEN_EXPIRE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
