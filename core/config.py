"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tokenward happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() or
accept a Settings instance instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates missing secrets with a warning, production
      mode refuses to start without them.

  Fail-fast without exiting: load_settings() converts pydantic's
      ValidationError into ConfigurationError. The process entry point
      (asgi.py, main.py) lets it propagate; nothing in the library calls
      sys.exit().

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. HMAC-SHA256
       lookup hashes and JWT signing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       ACCESS_TOKEN_SECRET is a hard startup failure. A random key in
       production would invalidate every refresh token on restart, because
       refresh tokens are located by HMAC(SECRET_KEY, token).

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenward.config")


class ConfigurationError(Exception):
    """Raised at startup when the environment does not describe a runnable service.

    Carries the individual problems so the entry point can print all of them
    at once instead of failing on the first.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file.
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
    # Keys the HMAC lookup index for refresh tokens. Empty string is the
    # sentinel for "not configured"; the validator fills or rejects it.
    secret_key: str = ""
    database_url: str = "sqlite:///tokenward.db"

    # ------------------------------------------------------------------
    # Access tokens (JWT)
    # ------------------------------------------------------------------

    access_token_secret: str = ""
    access_token_issuer: str = "tokenward-api"
    access_token_audience: str = "tokenward-client"
    access_token_expire_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    refresh_token_expire_days: int = 30
    # bcrypt cost for refresh-token verification hashes. Tests drop this to
    # 4 (bcrypt's minimum) to keep suites fast.
    refresh_token_bcrypt_rounds: int = 10
    password_bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Ephemeral store (passwordless credentials, OTPs, counters)
    # ------------------------------------------------------------------

    ephemeral_backend: Literal["sqlite", "redis"] = "sqlite"
    ephemeral_db_path: str = "tokenward_ephemeral.db"
    redis_url: str = ""
    redis_socket_timeout: float = 5.0

    # ------------------------------------------------------------------
    # Passwordless
    # ------------------------------------------------------------------

    passwordless_ttl_seconds: int = 5 * 60
    otp_digits: int = 6
    otp_max_attempts: int = 5
    rate_limit_window_seconds: int = 15 * 60
    passwordless_max_requests: int = 5

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    mail_provider: Literal["log", "smtp"] = "log"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from_email: str = "noreply@tokenward.local"
    mail_from_name: str = "tokenward"
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Only enable behind a proxy that overwrites X-Forwarded-For; clients can
    # set the header to anything.
    trust_forwarded_for: bool = False
    rate_limit_enabled: bool = True
    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Refresh tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters.
        """
        for field_name in ("secret_key", "access_token_secret"):
            value = getattr(self, field_name)
            env_name = field_name.upper()
            if not value:
                if self.debug:
                    value = secrets.token_hex(32)
                    setattr(self, field_name, value)
                    logger.warning("WARNING: Using auto-generated %s. Sessions will not persist across restarts.", env_name)
                else:
                    raise ValueError(
                        f"{env_name} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(value) < 32:
                raise ValueError(f"{env_name} must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_backends(self) -> "Settings":
        """Reject backend selections that name a service without saying where it is."""
        if self.mail_provider == "smtp" and not self.smtp_host:
            raise ValueError("SMTP_HOST is required when MAIL_PROVIDER=smtp.")
        if self.ephemeral_backend == "redis" and not self.redis_url:
            raise ValueError("REDIS_URL is required when EPHEMERAL_BACKEND=redis.")
        if not 4 <= self.refresh_token_bcrypt_rounds <= 31:
            raise ValueError("REFRESH_TOKEN_BCRYPT_ROUNDS must be between 4 and 31.")
        if not 4 <= self.password_bcrypt_rounds <= 31:
            raise ValueError("PASSWORD_BCRYPT_ROUNDS must be between 4 and 31.")
        if self.otp_digits < 4:
            raise ValueError("OTP_DIGITS must be at least 4.")
        return self


def load_settings(**overrides) -> Settings:
    """Build Settings from the environment plus explicit overrides.

    Raises ConfigurationError (never exits the process) when validation fails,
    listing every problem pydantic reported.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        problems = [str(err.get("msg", err)) for err in exc.errors()]
        raise ConfigurationError(problems) from exc


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or pass a Settings instance
    to create_app() directly.
    """
    return load_settings()
