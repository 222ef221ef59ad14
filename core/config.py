"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Staffwise happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production mode
      refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session token
       signing and verification-code hashing both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("staffwise.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'staffwise.db'}"


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "session"
    # Server-side cap for sessions issued without "remember me". The cookie
    # itself carries no max-age and dies with the browser session.
    session_ttl_seconds: int = 12 * 3600
    remember_session_seconds: int = 30 * 24 * 3600
    # VerificationSession bags and emailed one-time codes.
    verification_ttl_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Identity providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""

    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant_id: str = "common"

    # Generic OIDC (Okta, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    # Covers /verify and the code-sending forms (/signup, /forgot-password).
    verify_rate_limit: str = "10/minute"
    rate_limit_storage: str = "memory://"

    # ------------------------------------------------------------------
    # Email (best-effort notifications; an empty URL is allowed only with DEBUG)
    # ------------------------------------------------------------------

    email_api_url: str = ""
    email_api_key: str = ""
    email_sender: str = "DoNotReply@staffwise.local"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """SECRET_KEY policy [M6][M7].

        DEBUG=true with no key: a random key is generated for this process
            only, so every restart signs users out.
        DEBUG off with no key: startup fails.
        Any key under 32 characters: startup fails.
        """
        if not self.secret_key and self.debug:
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set -- generated a throwaway key; sessions end on restart.")
        elif not self.secret_key:
            raise ValueError(
                "SECRET_KEY is required in production mode. Export SECRET_KEY (or add it to .env), "
                "or set DEBUG=true for local development."
            )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
