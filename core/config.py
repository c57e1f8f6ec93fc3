"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for NetPulse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. poll_interval_seconds -> POLL_INTERVAL_SECONDS).

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production mode
      refuses to start without one.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, inventory/, tickets/, or realtime/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("netpulse.config")


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
    # Empty string means each store uses its own SQLite file next to its module.
    database_url: str = ""

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    poll_interval_seconds: float = Field(default=30.0, gt=0)
    max_concurrent_polls: int = Field(default=10, ge=1)
    monitoring_autostart: bool = True

    # ------------------------------------------------------------------
    # SNMP transport
    # ------------------------------------------------------------------

    snmp_port: int = 161
    snmp_timeout: float = 5.0
    snmp_retries: int = 1

    # ------------------------------------------------------------------
    # Alerting
    # ------------------------------------------------------------------

    # Disk thresholds are stored per device but were never part of the health
    # decision. Opt in here to include them.
    classify_disk: bool = False
    # 0 disables de-duplication: every critical poll opens a new incident.
    incident_dedup_seconds: int = Field(default=0, ge=0)
    system_requester: str = "system"

    # ------------------------------------------------------------------
    # Real-time fan-out
    # ------------------------------------------------------------------

    subscriber_queue_size: int = Field(default=100, ge=1)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    api_rate_limit: str = "60/minute"

    # ------------------------------------------------------------------
    # HTTP edge
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:5173"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
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
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
