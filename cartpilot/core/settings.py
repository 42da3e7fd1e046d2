"""Cartpilot application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``MAX_CONCURRENT`` → ``max_concurrent``).  None of the backoff formulas,
cooldown thresholds, or monitoring cadences are hard-coded in the engine;
they are all read from here and handed to the components that need them.

Typical usage::

    from cartpilot.core.settings import Settings

    settings = Settings()                     # loads from env + .env
    policy = settings.to_cooldown_policy()    # build the pool cooldown policy
    print(settings.webhook_configured)        # True / False
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cartpilot.pool.cooldown import CooldownPolicy

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


def _zero_to_forever(seconds: float) -> float | None:
    """Map the ``0 = forever`` env convention to ``None``."""
    return seconds or None


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    max_concurrent: int = Field(
        default=4,
        ge=1,
        description="Maximum number of checkout runs executing at once.",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Counted attempts before a task fails permanently.",
    )

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------
    stage_timeout_s: float = Field(
        default=90.0,
        gt=0,
        description="Timeout for a single adapter call (one stage).",
    )
    acquire_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for a single resource-pool acquire.",
    )

    # ------------------------------------------------------------------
    # Monitor mode
    # ------------------------------------------------------------------
    monitor_interval_min_s: float = Field(
        default=20.0,
        ge=0,
        description="Lower bound of the jittered wait between stock checks.",
    )
    monitor_interval_max_s: float = Field(
        default=40.0,
        ge=0,
        description="Upper bound of the jittered wait between stock checks.",
    )
    max_monitor_duration_s: float = Field(
        default=3600.0,
        gt=0,
        description="Total monitoring budget before a run fails with stock_timeout.",
    )

    # ------------------------------------------------------------------
    # Task retry backoff
    # ------------------------------------------------------------------
    retry_backoff_base_s: float = Field(
        default=5.0,
        ge=0,
        description="Base delay before retrying a task after a retryable failure.",
    )
    retry_backoff_max_s: float = Field(
        default=300.0,
        ge=0,
        description="Cap on the exponential task retry delay.",
    )
    retry_jitter_s: float = Field(
        default=2.0,
        ge=0,
        description="Upper bound of the uniform jitter added to retry delays.",
    )
    resource_retry_delay_s: float = Field(
        default=2.0,
        ge=0,
        description="Delay before re-trying a task that found no free resource.",
    )
    max_resource_wait_s: float = Field(
        default=1800.0,
        gt=0,
        description="How long a task may wait for resources before failing.",
    )

    # ------------------------------------------------------------------
    # Resource health
    # ------------------------------------------------------------------
    failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Failures within the window that put a resource in cooldown.",
    )
    failure_window_s: float = Field(
        default=600.0,
        gt=0,
        description="Sliding window for counting resource failures.",
    )
    cooldown_base_s: float = Field(
        default=60.0,
        gt=0,
        description="First cooldown duration.",
    )
    cooldown_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Growth factor per consecutive cooldown.",
    )
    cooldown_max_s: float = Field(
        default=3600.0,
        gt=0,
        description="Cap on the escalated cooldown duration.",
    )
    account_lock_ban_s: float = Field(
        default=0.0,
        ge=0,
        description="Ban duration for a locked account (0 = forever).",
    )
    detection_ban_s: float = Field(
        default=21600.0,
        ge=0,
        description="Ban duration for a detected proxy (0 = forever).",
    )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    webhook_url: str = Field(
        default="",
        description="Discord-compatible webhook URL for status events.",
    )
    notify_retries: bool = Field(
        default=False,
        description="Also notify on transient retries, not only terminal outcomes.",
    )

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------
    resources_path: str = Field(
        default="config/resources.json",
        description="JSON file listing accounts and proxies.",
    )
    tasks_path: str = Field(
        default="config/tasks.json",
        description="JSON file listing the purchase tasks to submit.",
    )
    database_path: str = Field(
        default="data/cartpilot.db",
        description="Path to the SQLite database file.",
    )
    adapter_factory: str = Field(
        default="",
        description="Adapter factory import path, 'package.module:callable'.",
    )

    # ------------------------------------------------------------------
    # Runtime flags
    # ------------------------------------------------------------------
    dry_run: bool = Field(
        default=False,
        description="Log notification payloads without posting them.",
    )
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    @field_validator("adapter_factory")
    @classmethod
    def _validate_adapter_factory(cls, v: str) -> str:
        if v and ":" not in v:
            raise ValueError(
                f"adapter_factory must look like 'package.module:callable', got {v!r}"
            )
        return v

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_ranges(self) -> Settings:
        """Ensure min ≤ max for every paired bound."""
        if self.monitor_interval_min_s > self.monitor_interval_max_s:
            raise ValueError(
                f"monitor_interval_min_s ({self.monitor_interval_min_s}) "
                f"> monitor_interval_max_s ({self.monitor_interval_max_s})"
            )
        if self.retry_backoff_base_s > self.retry_backoff_max_s:
            raise ValueError(
                f"retry_backoff_base_s ({self.retry_backoff_base_s}) "
                f"> retry_backoff_max_s ({self.retry_backoff_max_s})"
            )
        if self.cooldown_base_s > self.cooldown_max_s:
            raise ValueError(
                f"cooldown_base_s ({self.cooldown_base_s}) "
                f"> cooldown_max_s ({self.cooldown_max_s})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    def to_cooldown_policy(self) -> CooldownPolicy:
        """Build the :class:`CooldownPolicy` shared by both resource pools."""
        return CooldownPolicy(
            failure_threshold=self.failure_threshold,
            failure_window=self.failure_window_s,
            base_cooldown=self.cooldown_base_s,
            max_cooldown=self.cooldown_max_s,
            backoff_multiplier=self.cooldown_multiplier,
        )

    @property
    def account_lock_ban(self) -> float | None:
        """Ban duration applied to locked accounts; ``None`` = forever."""
        return _zero_to_forever(self.account_lock_ban_s)

    @property
    def detection_ban(self) -> float | None:
        """Ban duration applied to detected proxies; ``None`` = forever."""
        return _zero_to_forever(self.detection_ban_s)

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        return Path(self.database_path).resolve()

    @property
    def webhook_configured(self) -> bool:
        """``True`` if a webhook URL is set."""
        return bool(self.webhook_url)
