"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Zorem happen here. No module should call
os.getenv() or os.environ.get() directly. The process builds one Settings
instance at startup (get_settings()) and passes it explicitly into every
service constructor; business logic never looks configuration up on its own.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Frozen BaseSettings: the model is immutable after construction, so a service
      holding a Settings reference can never observe it changing. Tests build
      their own Settings(...) with fake secrets and limits.

  field_validator on secret_key: dev mode generates a key with a warning,
      production mode refuses to start without one. validate_default=True makes
      the validator run even when SECRET_KEY is absent from the environment.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and the
  HMAC used to store magic-link and challenge tokens both rely on its entropy.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
rooms/, or media/.
"""

from __future__ import annotations

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("zorem.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'zorem.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields except SECRET_KEY have defaults so Settings() can be built in a
    test environment without a .env file. Field names map to upper-cased env
    var names (secret_key -> SECRET_KEY).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    # debug must stay declared before secret_key: the secret_key validator
    # reads it from ValidationInfo.data.
    debug: bool = False
    secret_key: str = Field(default="", validate_default=True)
    port: int = 3000
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    session_expire_seconds: int = Field(default=3600, ge=60)
    magic_link_expiry_seconds: int = Field(default=3600, ge=60)
    email_verification_expiry_seconds: int = Field(default=86400, ge=300)
    second_factor_ttl_seconds: int = Field(default=300, ge=30)
    second_factor_max_attempts: int = Field(default=5, ge=1)

    # ------------------------------------------------------------------
    # Rooms and uploads
    # ------------------------------------------------------------------

    room_code_max_attempts: int = Field(default=5, ge=1)
    upload_url_ttl_seconds: int = Field(default=300, ge=30)
    download_url_ttl_seconds: int = Field(default=3600, ge=60)

    # ------------------------------------------------------------------
    # Frontend / CORS
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:8080"
    # Empty string means "same as frontend_url".
    cors_origin: str = ""

    # ------------------------------------------------------------------
    # Object storage (S3 or Cloudflare R2)
    # ------------------------------------------------------------------

    storage_type: str = Field(default="s3", pattern=r"^(s3|r2)$")
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "us-east-1"
    s3_bucket_name: str = ""
    r2_endpoint: str = ""

    # ------------------------------------------------------------------
    # Email (Resend)
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    resend_from_email: str = ""

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limiting -- strings in `limits` notation
    # ------------------------------------------------------------------

    rate_limit_general: str = "100/15 minutes"
    rate_limit_sensitive: str = "10/15 minutes"
    rate_limit_room_creation: str = "5/hour"
    rate_limit_magic_link: str = "3/hour"
    # "memory://" keeps counters in-process; a redis:// URL shares them.
    rate_limit_storage_url: str = "memory://"
    # Only honour X-Forwarded-For when running behind a trusted proxy.
    trust_forwarded_for: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str, info: ValidationInfo) -> str:
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing. This is a
            startup failure, never a runtime one.

        Both modes: reject keys shorter than 32 characters.
        """
        if not value:
            if info.data.get("debug"):
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
                return secrets.token_hex(32)
            raise ValueError(
                "SECRET_KEY is required in production mode. "
                "Set SECRET_KEY in your environment or .env file. "
                "To run in development mode, set DEBUG=true."
            )
        if len(value) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return value

    @field_validator("frontend_url", "cors_origin")
    @classmethod
    def trim_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_storage(self) -> "Settings":
        if self.storage_type == "r2" and not self.r2_endpoint:
            raise ValueError("STORAGE_TYPE=r2 requires R2_ENDPOINT.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def allowed_origins(self) -> list[str]:
        return [self.cors_origin or self.frontend_url]

    @property
    def storage_configured(self) -> bool:
        return bool(self.aws_access_key_id and self.aws_secret_access_key and self.s3_bucket_name)

    @property
    def email_configured(self) -> bool:
        return bool(self.resend_api_key and self.resend_from_email)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only process entry points (api/main.py, main.py) call this. Everything
    below them receives the instance as a constructor argument.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
