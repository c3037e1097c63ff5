"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. telegram_bot_token -> TELEGRAM_BOT_TOKEN).

  @model_validator(mode="after"): cross-field rules that must hold before the
      app serves a single request (transfer TTL band, local auth bypass).

Security notes:
  An empty TELEGRAM_BOT_TOKEN does not stop startup, but every signature check
  fails closed while it is empty. A warning is logged so the state is visible.

  LOCAL_AUTH_BYPASS is refused unless DEBUG=true. The bypass mints a session
  for a fixed local user on any localhost request and must never reach
  production.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tutorauth.config")


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
    # Empty means the SQLite file next to auth/store.py.
    database_url: str = ""
    # SQLite busy timeout; bounds how long a store call may wait on a lock.
    store_timeout_seconds: float = 5.0
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:5173"]
    # Public origin used to build transfer links. Derived from the request
    # (X-Forwarded-Host / Host) when empty.
    app_base_url: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = "session_id"
    session_ttl_minutes: int = 1440

    # ------------------------------------------------------------------
    # Telegram signed login
    # ------------------------------------------------------------------

    telegram_bot_token: str = ""
    telegram_init_data_ttl_sec: int = 300
    telegram_replay_skew_sec: int = 60

    # ------------------------------------------------------------------
    # Cross-device transfer
    # ------------------------------------------------------------------

    transfer_token_ttl_sec: int = 120
    transfer_token_min_ttl_sec: int = 30
    transfer_token_max_ttl_sec: int = 300
    transfer_redirect_url: str = "/dashboard"

    # ------------------------------------------------------------------
    # Rate limiting (requests per minute unless noted)
    # ------------------------------------------------------------------

    rate_limit_webapp_per_min: int = 30
    rate_limit_transfer_create_per_min: int = 3
    rate_limit_transfer_create_ip_per_min: int = 10
    rate_limit_transfer_consume_ip_per_min: int = 10
    rate_limit_transfer_consume_token_per_min: int = 5
    # slowapi limit string for the session-management routes
    rate_limit_sessions: str = "30/minute"
    # limits storage URI. memory:// keeps counters process-local.
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # Local development
    # ------------------------------------------------------------------

    local_auth_bypass: bool = False
    local_dev_telegram_id: int = 999_999_999
    local_dev_username: str = "local_teacher"
    local_dev_first_name: str = "Local"
    local_dev_last_name: str = "Teacher"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_auth_settings(self) -> "Settings":
        """Enforce startup invariants for the auth core.

        The transfer TTL band must be non-empty, otherwise every mint request
        would be clamped to a nonsensical value.

        The local auth bypass is a development convenience only. Outside
        DEBUG mode it is rejected so a stray env var cannot open a backdoor.
        """
        if self.transfer_token_min_ttl_sec <= 0:
            raise ValueError("TRANSFER_TOKEN_MIN_TTL_SEC must be positive.")
        if self.transfer_token_min_ttl_sec > self.transfer_token_max_ttl_sec:
            raise ValueError("TRANSFER_TOKEN_MIN_TTL_SEC must not exceed TRANSFER_TOKEN_MAX_TTL_SEC.")
        if self.session_ttl_minutes <= 0:
            raise ValueError("SESSION_TTL_MINUTES must be positive.")
        if self.local_auth_bypass and not self.debug:
            raise ValueError("LOCAL_AUTH_BYPASS is only allowed when DEBUG=true.")
        if not self.telegram_bot_token:
            logger.warning("TELEGRAM_BOT_TOKEN is not set -- Telegram logins will be rejected.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
