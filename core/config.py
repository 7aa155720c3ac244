"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TenantGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and for checking that asymmetric JWT algorithms have key material.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It keys the
       HMAC that hashes refresh tokens at rest and, for HS* algorithms, signs
       access tokens.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [K1] The signing algorithm and keys are configuration, never hardcoded.
       HS256/HS384/HS512 sign with SECRET_KEY; RS*/PS*/ES* need both
       JWT_PRIVATE_KEY and JWT_PUBLIC_KEY (PEM).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tenantgate_auth.db'}"

SYMMETRIC_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})
ASYMMETRIC_ALGORITHMS = frozenset({"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"})


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    jwt_algorithm: str = "HS256"
    jwt_private_key: str = ""  # PEM, asymmetric algorithms only
    jwt_public_key: str = ""  # PEM, asymmetric algorithms only
    jwt_issuer: str = "tenantgate"
    jwt_audience: str = "tenantgate-api"
    access_token_expire_minutes: int = 15

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    refresh_token_expire_minutes: int = 7 * 24 * 60
    # Consumed/revoked rows are kept this long after their last use so a
    # replayed token is still recognized (and logged) as a replay.
    refresh_token_retention_minutes: int = 24 * 60
    refresh_purge_interval_seconds: int = 60 * 60
    revoke_session_on_refresh_reuse: bool = False

    # ------------------------------------------------------------------
    # Tenancy
    # ------------------------------------------------------------------

    tenant_header: str = "X-Company-Id"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # List values are read from the environment as JSON, e.g. ALLOWED_HOSTS='["api.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7] [M6].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_jwt_keys(self) -> "Settings":
        """Reject unknown algorithms and asymmetric algorithms without keys [K1]."""
        algorithm = self.jwt_algorithm.upper()
        if algorithm not in SYMMETRIC_ALGORITHMS | ASYMMETRIC_ALGORITHMS:
            raise ValueError(f"Unsupported JWT_ALGORITHM: {self.jwt_algorithm!r}")
        self.jwt_algorithm = algorithm
        if algorithm in ASYMMETRIC_ALGORITHMS and not (self.jwt_private_key and self.jwt_public_key):
            raise ValueError(f"JWT_ALGORITHM={algorithm} requires both JWT_PRIVATE_KEY and JWT_PUBLIC_KEY.")
        if self.access_token_expire_minutes < 1 or self.refresh_token_expire_minutes < 1:
            raise ValueError("Token lifetimes must be at least one minute.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly; components in auth/ receive the instance as a constructor argument.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
