"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the console happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, encryption_key -> ENCRYPTION_KEY).

  @model_validator(mode="after"): Cross-field validation once all fields are
      resolved. Dev mode generates missing keys with a warning, production
      mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the OAuth state session both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       ENCRYPTION_KEY is a hard startup failure. A random encryption key in
       production would make every stored password unreadable after restart.

  [M8] Cookies are always marked Secure outside debug mode, whatever
       SECURE_COOKIES says. See effective_secure_cookies.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, accounts/, audit/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from cryptography.fernet import Fernet
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sentinel.config")


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
    encryption_key: str = ""
    database_url: str = "sqlite:///sentinel.db"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_prefix: str = "sentinel"
    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Access policy
    # ------------------------------------------------------------------

    # Bounded wait for the allow-list lookup inside the session gate.
    allowlist_timeout_seconds: float = 3.0
    # Bounded wait for the cached owner/allowed checks used by /auth/me.
    client_check_timeout_seconds: float = 5.0
    # Clamped to 60..300 by access_cache_ttl.
    access_cache_ttl_seconds: int = 300

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    trash_retention_days: int = 30
    # 0 disables the background sweep; purge stays manual (UI or CLI).
    trash_purge_interval_seconds: int = 0

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def effective_secure_cookies(self) -> bool:
        """Secure flag applied to every session cookie [M8]."""
        return True if not self.debug else self.secure_cookies

    @property
    def access_cache_ttl(self) -> int:
        return max(60, min(300, self.access_cache_ttl_seconds))

    @property
    def identity_configured(self) -> bool:
        """True when at least one OAuth/OIDC provider has credentials."""
        google = bool(self.google_client_id and self.google_client_secret)
        oidc = bool(self.oidc_client_id and self.oidc_client_secret and self.oidc_discovery_url)
        return google or oidc

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_keys(self) -> "Settings":
        """Enforce SECRET_KEY and ENCRYPTION_KEY policy [M6] [M7].

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Sessions and encrypted passwords will not survive restart.

        Production mode: refuse to start if either key is missing.

        Both modes: reject SECRET_KEY shorter than 32 characters and any
            ENCRYPTION_KEY that is not a valid Fernet key.
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

        if not self.encryption_key:
            if self.debug:
                self.encryption_key = Fernet.generate_key().decode()
                logger.warning(
                    "Using auto-generated ENCRYPTION_KEY. Stored passwords will be unreadable after restart."
                )
            else:
                raise ValueError(
                    "ENCRYPTION_KEY is required in production mode. "
                    'Generate one with: python -c "from cryptography.fernet import Fernet; '
                    'print(Fernet.generate_key().decode())"'
                )
        try:
            Fernet(self.encryption_key.encode())
        except (ValueError, TypeError) as exc:
            raise ValueError("ENCRYPTION_KEY must be a urlsafe base64-encoded 32-byte Fernet key.") from exc
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
