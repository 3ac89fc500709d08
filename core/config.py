"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for KeyWarden happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or (inside the core) accept the individual values as constructor arguments.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Two jobs: the DEBUG-conditional SECRET_KEY policy, and
      building the database DSN exactly once. Business logic reads
      settings.database_url and never assembles connection strings itself.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key makes forging session tokens
       practical.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Rotating the key invalidates every issued session
       token, so a random per-process key would log everyone out on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

logger = logging.getLogger("keywarden.config")

_DEFAULT_SQLITE_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'keywarden_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `debug` reads from DEBUG.
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
    log_level: str = "INFO"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    # Per-request budget handed to every store and hasher call.
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Password policy and hashing
    # ------------------------------------------------------------------

    password_min_length: int = Field(default=8, ge=1, le=72)
    # bcrypt log2 work factor. 4 is the library minimum (tests only).
    hash_rounds: int = Field(default=12, ge=4, le=31)
    hash_workers: int = Field(default=4, ge=1)

    # ------------------------------------------------------------------
    # Single-use tokens
    # ------------------------------------------------------------------

    reset_token_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    # Off by default: reset and verification are independent flows.
    # Enable to also mark the account verified when a reset link is used.
    reset_marks_verified: bool = False
    purge_interval_seconds: int = Field(default=6 * 60 * 60, gt=0)

    # ------------------------------------------------------------------
    # Links handed to the email dispatcher
    # ------------------------------------------------------------------

    base_url: str = "http://localhost:8000"
    verification_path: str = "/api/v1/auth/verify-email"
    reset_path: str = "/reset-password"

    # ------------------------------------------------------------------
    # Database -- either a full URL or the postgres parts below.
    # ------------------------------------------------------------------

    database_url: str = ""
    db_host: str = ""
    db_port: int = 5432
    db_name: str = "keywarden"
    db_user: str = ""
    db_password: str = ""

    # ------------------------------------------------------------------
    # SMTP (empty host = log links instead of sending)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@localhost"
    smtp_from_name: str = "KeyWarden"
    smtp_timeout_seconds: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def build_database_url(self) -> "Settings":
        """Resolve database_url once.

        Precedence: explicit DATABASE_URL, then the DB_* parts (postgres via
        psycopg), then the local SQLite file. URL.create() escapes credentials,
        so passwords containing '@' or '/' are safe.
        """
        if self.database_url:
            return self
        if self.db_host:
            self.database_url = URL.create(
                "postgresql+psycopg",
                username=self.db_user or None,
                password=self.db_password or None,
                host=self.db_host,
                port=self.db_port,
                database=self.db_name,
            ).render_as_string(hide_password=False)
        else:
            self.database_url = _DEFAULT_SQLITE_URL
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
