"""Jobrota application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``MAX_CONCURRENT_WORKERS`` → ``max_concurrent_workers``).

Typical usage::

    from jobrota.core.settings import Settings

    settings = Settings()                       # loads from env + .env
    print(settings.execution_engine_configured)  # True / False
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobrota.core.models import CreditRefundPolicy, SelectionStrategy

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


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
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/jobrota.db",
        description="Path to the SQLite database file.",
    )

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------
    max_concurrent_workers: int = Field(
        default=5,
        ge=1,
        description="Global ceiling on concurrently running executions (all tenants).",
    )
    execution_timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Hard timeout for one execution; exceeded runs count as transient failures.",
    )

    # ------------------------------------------------------------------
    # Scheduler loop
    # ------------------------------------------------------------------
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Fallback tick interval when no wake signal arrives.",
    )
    stale_after_seconds: float = Field(
        default=240.0,
        gt=0.0,
        description="Assigned/processing entries older than this are treated as orphaned.",
    )
    claim_scan_limit: int = Field(
        default=10,
        ge=1,
        description="Maximum queued entries inspected per claim and claims per tick.",
    )

    # ------------------------------------------------------------------
    # Failure escalation
    # ------------------------------------------------------------------
    failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures that put an account into cooldown.",
    )
    cooldown_minutes: int = Field(default=60, ge=1, description="Cooldown duration.")
    rate_limit_block_step_minutes: int = Field(
        default=60,
        ge=1,
        description="Block minutes per consecutive failure on a rate-limit error.",
    )
    rate_limit_block_cap_minutes: int = Field(
        default=480,
        ge=1,
        description="Upper bound on an escalated rate-limit block.",
    )
    auth_block_minutes: int = Field(
        default=120,
        ge=1,
        description="Flat block applied on an authentication error.",
    )
    default_max_retries: int = Field(
        default=3,
        ge=0,
        description="Retry budget per queue entry when a job does not set one.",
    )

    # ------------------------------------------------------------------
    # Account selection
    # ------------------------------------------------------------------
    default_strategy: SelectionStrategy = Field(
        default=SelectionStrategy.BALANCED,
        description="Selection strategy when a job does not set one.",
    )
    retry_horizon_minutes: int = Field(
        default=60,
        ge=1,
        description="Only accounts usable again within this horizon produce a wait signal.",
    )
    min_health_score: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Accounts scoring below this are skipped by the selector.",
    )
    enforce_hourly_limit: bool = Field(
        default=False,
        description="Also cap requests per rolling hour at max(1, daily_limit // 24).",
    )

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------
    credits_per_item: int = Field(
        default=1,
        ge=0,
        description="Credits reserved per work item at job creation.",
    )
    credit_refund_policy: CreditRefundPolicy = Field(
        default=CreditRefundPolicy.NONE,
        description="Refund behaviour for terminally failed items.",
    )

    # ------------------------------------------------------------------
    # Execution engine
    # ------------------------------------------------------------------
    execution_engine_url: str = Field(
        default="",
        description="Base URL of the remote execution service.",
    )
    execution_engine_token: str = Field(
        default="",
        description="Bearer token sent to the remote execution service.",
    )
    execution_engine_max_attempts: int = Field(
        default=3,
        ge=1,
        description="HTTP attempts per execution for transport / 5xx errors.",
    )

    # ------------------------------------------------------------------
    # Operator files
    # ------------------------------------------------------------------
    stats_path: str = Field(
        default="",
        description="Write a JSON stats snapshot here after every tick ('' = disabled).",
    )
    heartbeat_path: str = Field(
        default="",
        description="Write a heartbeat timestamp here after every tick ('' = disabled).",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
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

    @field_validator("execution_engine_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_timeouts(self) -> Settings:
        """An entry must not be declared orphaned while it can still be running."""
        if self.stale_after_seconds < self.execution_timeout_seconds:
            raise ValueError(
                f"stale_after_seconds ({self.stale_after_seconds}) "
                f"< execution_timeout_seconds ({self.execution_timeout_seconds})"
            )
        if self.rate_limit_block_step_minutes > self.rate_limit_block_cap_minutes:
            raise ValueError(
                f"rate_limit_block_step_minutes ({self.rate_limit_block_step_minutes}) "
                f"> rate_limit_block_cap_minutes ({self.rate_limit_block_cap_minutes})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        return Path(self.database_path).resolve()

    @property
    def retry_horizon(self) -> timedelta:
        """:attr:`retry_horizon_minutes` as a :class:`~datetime.timedelta`."""
        return timedelta(minutes=self.retry_horizon_minutes)

    @property
    def stale_after(self) -> timedelta:
        """:attr:`stale_after_seconds` as a :class:`~datetime.timedelta`."""
        return timedelta(seconds=self.stale_after_seconds)

    @property
    def execution_engine_configured(self) -> bool:
        """``True`` if a remote execution service URL is set."""
        return bool(self.execution_engine_url)
