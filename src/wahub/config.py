"""Settings for the wa-hub orchestrator.

Every tunable (queue bounds, watchdog timeouts, restore pacing, webhook
signing) lives in one section model below. Values come from a TOML file
read by :func:`load_config`; keys the file leaves out fall back to
``WAHUB_<SECTION>__<KEY>`` environment variables and then to the defaults
declared here.

Example TOML configuration:
    [queue]
    max_queue_size = 200
    outbound_ttl_seconds = 300

    [restart]
    restart_backoff_sequence_seconds = [300, 900, 3600]

Example environment variable override:
    WAHUB_RATE_LIMIT__MAX_SENDS_PER_MINUTE=5
    WAHUB_RESTORE__RESTORE_CONCURRENCY=2
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _require_positive_sequence(values: list[float], name: str) -> list[float]:
    if not values:
        raise ValueError(f"{name} must contain at least one delay")
    if any(v < 0 for v in values):
        raise ValueError(f"{name} must not contain negative delays")
    return values


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class QueueConfig(BaseSettings):
    """Outbound queue and inbound buffer configuration.

    Attributes:
        max_queue_size: Hard cap on queued outbound items per instance
        outbound_ttl_seconds: Time-to-live of a queued outbound item
        outbound_drain_delay_seconds: Minimum spacing between successive sends
        inbound_flush_batch: Buffered inbound entries delivered per flush
        inbound_flush_interval_seconds: Interval between inbound flushes
        inbound_max_buffer: Maximum buffered inbound entries (oldest dropped)
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_QUEUE__",
        extra="forbid",
    )

    max_queue_size: int = Field(default=200, ge=1, le=100000)
    outbound_ttl_seconds: float = Field(default=300.0, gt=0)
    outbound_drain_delay_seconds: float = Field(default=0.35, ge=0)
    inbound_flush_batch: int = Field(default=50, ge=1, le=10000)
    inbound_flush_interval_seconds: float = Field(default=0.5, gt=0)
    inbound_max_buffer: int = Field(default=2000, ge=1, le=1000000)


class RateLimitConfig(BaseSettings):
    """Per-instance send rate limits.

    Attributes:
        max_sends_per_minute: Maximum sends in any sliding 60 second window
        max_sends_per_hour: Maximum sends in any sliding 3600 second window
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_RATE_LIMIT__",
        extra="forbid",
    )

    max_sends_per_minute: int = Field(default=3, ge=1, le=10000)
    max_sends_per_hour: int = Field(default=30, ge=1, le=100000)


class RestartConfig(BaseSettings):
    """Restart and backoff policy.

    Attributes:
        restart_backoff_sequence_seconds: Escalating delay per restart, indexed
            by the instance's backoff index (last value repeats)
        restart_window_minutes: Sliding window in which restarts are counted
        max_restarts_per_window: Restarts allowed before the extra pause applies
        restart_rate_limit_extra_hours: Pause layered on top once the window
            maximum is exceeded
        disable_auto_reconnect: Do not reconnect automatically after disconnect
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_RESTART__",
        extra="forbid",
    )

    restart_backoff_sequence_seconds: list[float] = Field(
        default_factory=lambda: [300.0, 900.0, 3600.0]
    )
    restart_window_minutes: float = Field(default=60.0, gt=0)
    max_restarts_per_window: int = Field(default=2, ge=1, le=100)
    restart_rate_limit_extra_hours: float = Field(default=1.0, ge=0)
    disable_auto_reconnect: bool = Field(default=False)

    @field_validator("restart_backoff_sequence_seconds")
    @classmethod
    def validate_sequence(cls, v: list[float]) -> list[float]:
        """Validate the backoff sequence is non-empty and non-negative."""
        return _require_positive_sequence(v, "restart_backoff_sequence_seconds")


class WatchdogConfig(BaseSettings):
    """Watchdog and polling thresholds.

    Attributes:
        tick_interval_seconds: Resolution of the timer driver loop
        connecting_watchdog_seconds: Max time in CONNECTING/NEEDS_QR before restart
        connecting_watchdog_max_restarts: Consecutive connect failures before ERROR
        ready_watchdog_seconds: Max time in SYNCING without readiness
        ready_poll_interval_seconds: Interval of the session identity poll
        ready_timeout_pause_minutes: Pause after a ready timeout before restart
        message_fallback_poll_enabled: Poll unread messages while ACTIVE
        message_fallback_poll_interval_seconds: Interval of the unread poll
        syncing_max_minutes: Cap on how long CONNECTING holds hub syncing mode
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_WATCHDOG__",
        extra="forbid",
    )

    tick_interval_seconds: float = Field(default=1.0, gt=0, le=60)
    connecting_watchdog_seconds: float = Field(default=600.0, gt=0)
    connecting_watchdog_max_restarts: int = Field(default=2, ge=0, le=100)
    ready_watchdog_seconds: float = Field(default=600.0, gt=0)
    ready_poll_interval_seconds: float = Field(default=15.0, gt=0)
    ready_timeout_pause_minutes: float = Field(default=10.0, ge=0)
    message_fallback_poll_enabled: bool = Field(default=True)
    message_fallback_poll_interval_seconds: float = Field(default=15.0, gt=0)
    syncing_max_minutes: float = Field(default=60.0, gt=0)


class QrConfig(BaseSettings):
    """QR login timeout and recovery policy.

    Attributes:
        qr_sync_grace_seconds: How long NEEDS_QR counts as capacity-constrained
        qr_stale_seconds: No new QR for this long marks the QR stale
        qr_ttl_seconds: NEEDS_QR longer than this triggers a recovery attempt
        qr_max_recovery_attempts: Recovery attempts before the terminal outcome
        qr_recovery_watchdog_interval_seconds: Interval of the QR check
        qr_recovery_backoff_seconds: Escalating delay before each recovery
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_QR__",
        extra="forbid",
    )

    qr_sync_grace_seconds: float = Field(default=30.0, ge=0)
    qr_stale_seconds: float = Field(default=90.0, gt=0)
    qr_ttl_seconds: float = Field(default=300.0, gt=0)
    qr_max_recovery_attempts: int = Field(default=3, ge=0, le=100)
    qr_recovery_watchdog_interval_seconds: float = Field(default=10.0, gt=0)
    qr_recovery_backoff_seconds: list[float] = Field(
        default_factory=lambda: [10.0, 30.0, 60.0]
    )

    @field_validator("qr_recovery_backoff_seconds")
    @classmethod
    def validate_sequence(cls, v: list[float]) -> list[float]:
        """Validate the QR recovery backoff sequence."""
        return _require_positive_sequence(v, "qr_recovery_backoff_seconds")


class CooldownConfig(BaseSettings):
    """Disconnect cooldown configuration.

    Attributes:
        min_disconnect_cooldown_seconds: Pause applied on any disconnect
        extended_restriction_cooldown_hours: Pause applied when the remote
            service signals a restriction or ban
        restriction_markers: Case-insensitive substrings of a disconnect
            reason that indicate a restriction
        terminal_disconnect_markers: Reasons that mean a fresh QR login is needed
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_COOLDOWN__",
        extra="forbid",
    )

    min_disconnect_cooldown_seconds: float = Field(default=300.0, ge=0)
    extended_restriction_cooldown_hours: float = Field(default=72.0, ge=0)
    restriction_markers: list[str] = Field(
        default_factory=lambda: ["BANNED", "RESTRICT", "BLOCKED", "SPAM", "TEMPORARILY"]
    )
    terminal_disconnect_markers: list[str] = Field(
        default_factory=lambda: ["LOGOUT", "UNPAIRED", "CONFLICT"]
    )


class RestoreConfig(BaseSettings):
    """Sequential restore configuration.

    Attributes:
        restore_concurrency: Instances restored at the same time
        restore_cooldown_seconds: Minimum spacing between successive restores
        restore_min_free_mem_mb: Free host memory required before a restore
        restore_max_attempts: Attempts before an instance is left un-restored
        restore_backoff_base_seconds: First deferral delay (doubles per attempt)
        restore_backoff_max_seconds: Cap on the deferral delay
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_RESTORE__",
        extra="forbid",
    )

    restore_concurrency: int = Field(default=1, ge=1, le=50)
    restore_cooldown_seconds: float = Field(default=30.0, ge=0)
    restore_min_free_mem_mb: int = Field(default=800, ge=0)
    restore_max_attempts: int = Field(default=5, ge=1, le=100)
    restore_backoff_base_seconds: float = Field(default=15.0, gt=0)
    restore_backoff_max_seconds: float = Field(default=120.0, gt=0)


class HealthConfig(BaseSettings):
    """Zombie detection for ACTIVE instances (diagnostic only).

    Attributes:
        health_check_interval_minutes: Interval of the inactivity check
        zombie_inactivity_threshold_minutes: Idle time that flags an instance
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_HEALTH__",
        extra="forbid",
    )

    health_check_interval_minutes: float = Field(default=20.0, gt=0)
    zombie_inactivity_threshold_minutes: float = Field(default=30.0, gt=0)


class EngineConfig(BaseSettings):
    """Automation engine timeouts and the global launch gate.

    Attributes:
        factory: Import path of the engine factory ("package.module:callable")
        auth_base_dir: Base directory of per-instance session data
        launch_timeout_seconds: Hard timeout for session initialize
        destroy_timeout_seconds: Hard timeout for session destroy
        send_timeout_seconds: Hard timeout for chat lookup and send
        poll_timeout_seconds: Hard timeout for ready and message polls
        delete_destroy_timeout_seconds: Destroy timeout before force purge on delete
        max_concurrent_launches: Browser launches allowed at the same time
        launch_min_free_mem_mb: Free host memory required to launch a session
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_ENGINE__",
        extra="forbid",
    )

    factory: str | None = Field(default=None)
    auth_base_dir: Path = Field(default=Path(".wwebjs_auth"))
    launch_timeout_seconds: float = Field(default=120.0, gt=0)
    destroy_timeout_seconds: float = Field(default=30.0, gt=0)
    send_timeout_seconds: float = Field(default=30.0, gt=0)
    poll_timeout_seconds: float = Field(default=15.0, gt=0)
    delete_destroy_timeout_seconds: float = Field(default=15.0, gt=0)
    max_concurrent_launches: int = Field(default=2, ge=1, le=100)
    launch_min_free_mem_mb: int = Field(default=400, ge=0)


class WebhookConfig(BaseSettings):
    """Outbound webhook delivery configuration.

    Attributes:
        secret: Shared secret for the HMAC-SHA256 signature header
        auth_token: Optional bearer token for receivers requiring API-key auth
        protection_bypass: Optional deployment-protection bypass header value
        retry_count: Delivery retries after the first attempt
        timeout_seconds: Request timeout in seconds
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_WEBHOOK__",
        extra="forbid",
    )

    secret: str | None = Field(default=None)
    auth_token: str | None = Field(default=None)
    protection_bypass: str | None = Field(default=None)
    retry_count: int = Field(default=2, ge=0, le=10)
    timeout_seconds: float = Field(default=10.0, gt=0, le=300)


class StorageConfig(BaseSettings):
    """Persisted snapshot locations.

    Attributes:
        instances_path: JSON file holding the ordered instance list
        idempotency_path: JSON file holding idempotency records
        idempotency_ttl_hours: Lifetime of an idempotency record
        idempotency_purge_interval_minutes: Interval of expired-record purge
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_STORAGE__",
        extra="forbid",
    )

    instances_path: Path = Field(default=Path(".wwebjs_instances.json"))
    idempotency_path: Path = Field(default=Path(".wwebjs_idempotency.json"))
    idempotency_ttl_hours: float = Field(default=24.0, gt=0)
    idempotency_purge_interval_minutes: float = Field(default=60.0, gt=0)


class WaHubConfig(BaseSettings):
    """Root settings object, one attribute per section.

    Example:
        WAHUB_QUEUE__MAX_QUEUE_SIZE=500
        WAHUB_WEBHOOK__SECRET="s3cret"
    """

    model_config = SettingsConfigDict(
        env_prefix="WAHUB_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    restart: RestartConfig = Field(default_factory=RestartConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    qr: QrConfig = Field(default_factory=QrConfig)
    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    restore: RestoreConfig = Field(default_factory=RestoreConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def load_config(config_path: Path | None = None) -> WaHubConfig:
    """Build a :class:`WaHubConfig` from a TOML file.

    Without ``config_path`` the first existing file among ./wahub.toml and
    ~/.config/wahub/config.toml is used; with neither present only
    environment variables and defaults apply.

    Raises:
        FileNotFoundError: If an explicit ``config_path`` does not exist.
        ValueError: If the resulting settings fail validation.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "wahub.toml",
            Path.home() / ".config" / "wahub" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Environment variables fill keys the file leaves unset
    try:
        return WaHubConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
