"""Unit tests for configuration management.

Tests cover:
- Default configuration values
- TOML file loading
- Environment variable overrides
- Validation errors for invalid configurations
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from wahub.config import (
    CooldownConfig,
    EngineConfig,
    LoggingConfig,
    QrConfig,
    QueueConfig,
    RateLimitConfig,
    RestartConfig,
    RestoreConfig,
    WaHubConfig,
    load_config,
)


class TestQueueConfig:
    """Test QueueConfig defaults and validation."""

    def test_default_values(self) -> None:
        """Test that default queue configuration values are correct."""
        config = QueueConfig()
        assert config.max_queue_size == 200
        assert config.outbound_ttl_seconds == 300.0
        assert config.outbound_drain_delay_seconds == 0.35
        assert config.inbound_max_buffer == 2000

    def test_zero_capacity_rejected(self) -> None:
        """Test that an empty queue capacity is rejected."""
        with pytest.raises(ValidationError):
            QueueConfig(max_queue_size=0)

    def test_unknown_field_rejected(self) -> None:
        """Test that typos in queue settings fail loudly."""
        with pytest.raises(ValidationError):
            QueueConfig(max_queue=10)


class TestRateLimitConfig:
    """Test RateLimitConfig defaults."""

    def test_default_values(self) -> None:
        """Test the default send rate limits."""
        config = RateLimitConfig()
        assert config.max_sends_per_minute == 3
        assert config.max_sends_per_hour == 30


class TestRestartConfig:
    """Test RestartConfig defaults and validation."""

    def test_default_values(self) -> None:
        """Test the default restart backoff policy."""
        config = RestartConfig()
        assert config.restart_backoff_sequence_seconds == [300.0, 900.0, 3600.0]
        assert config.restart_window_minutes == 60.0
        assert config.max_restarts_per_window == 2
        assert config.restart_rate_limit_extra_hours == 1.0
        assert config.disable_auto_reconnect is False

    def test_empty_sequence_rejected(self) -> None:
        """Test that an empty backoff sequence is rejected."""
        with pytest.raises(ValidationError, match="at least one delay"):
            RestartConfig(restart_backoff_sequence_seconds=[])

    def test_negative_delay_rejected(self) -> None:
        """Test that negative delays are rejected."""
        with pytest.raises(ValidationError, match="negative"):
            RestartConfig(restart_backoff_sequence_seconds=[10, -1])


class TestQrConfig:
    """Test QrConfig defaults and validation."""

    def test_default_values(self) -> None:
        """Test the default QR TTL and recovery policy."""
        config = QrConfig()
        assert config.qr_ttl_seconds == 300.0
        assert config.qr_max_recovery_attempts == 3
        assert config.qr_recovery_backoff_seconds == [10.0, 30.0, 60.0]

    def test_empty_recovery_backoff_rejected(self) -> None:
        """Test that an empty recovery backoff list is rejected."""
        with pytest.raises(ValidationError):
            QrConfig(qr_recovery_backoff_seconds=[])


class TestOtherSections:
    """Test defaults of the remaining sections."""

    def test_cooldown_defaults(self) -> None:
        """Test cooldown defaults and marker lists."""
        config = CooldownConfig()
        assert config.min_disconnect_cooldown_seconds == 300.0
        assert config.extended_restriction_cooldown_hours == 72.0
        assert "BANNED" in config.restriction_markers
        assert "LOGOUT" in config.terminal_disconnect_markers

    def test_restore_defaults(self) -> None:
        """Test restore scheduler defaults."""
        config = RestoreConfig()
        assert config.restore_concurrency == 1
        assert config.restore_cooldown_seconds == 30.0
        assert config.restore_min_free_mem_mb == 800
        assert config.restore_max_attempts == 5

    def test_engine_defaults(self) -> None:
        """Test engine section defaults."""
        config = EngineConfig()
        assert config.factory is None
        assert config.auth_base_dir == Path(".wwebjs_auth")
        assert config.max_concurrent_launches == 2


class TestLoggingConfig:
    """Test LoggingConfig validation."""

    def test_level_normalized(self) -> None:
        """Test that log level is normalized to uppercase."""
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_invalid_level(self) -> None:
        """Test that invalid log level raises ValidationError."""
        with pytest.raises(ValidationError, match="Invalid log level"):
            LoggingConfig(level="VERBOSE")

    def test_invalid_format(self) -> None:
        """Test that invalid log format raises ValidationError."""
        with pytest.raises(ValidationError, match="Invalid log format"):
            LoggingConfig(format="xml")


class TestWaHubConfig:
    """Test root configuration assembly."""

    def test_all_sections_present(self) -> None:
        """Test that every subsystem section has defaults."""
        config = WaHubConfig()
        for section in (
            "logging",
            "queue",
            "rate_limit",
            "restart",
            "watchdog",
            "qr",
            "cooldown",
            "restore",
            "health",
            "engine",
            "webhook",
            "storage",
        ):
            assert getattr(config, section) is not None

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test nested environment variable overrides."""
        monkeypatch.setenv("WAHUB_RATE_LIMIT__MAX_SENDS_PER_MINUTE", "5")
        monkeypatch.setenv("WAHUB_WEBHOOK__SECRET", "from-env")
        config = WaHubConfig()
        assert config.rate_limit.max_sends_per_minute == 5
        assert config.webhook.secret == "from-env"


class TestLoadConfig:
    """Test load_config TOML handling."""

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Test that TOML values are applied."""
        path = tmp_path / "wahub.toml"
        path.write_text(
            "[queue]\nmax_queue_size = 50\n\n"
            "[restart]\nrestart_backoff_sequence_seconds = [60, 120]\n"
        )
        config = load_config(path)
        assert config.queue.max_queue_size == 50
        assert config.restart.restart_backoff_sequence_seconds == [60.0, 120.0]
        assert config.rate_limit.max_sends_per_minute == 3

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        """Test that an explicit missing path raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_invalid_values_raise_value_error(self, tmp_path: Path) -> None:
        """Test that invalid TOML values surface as ValueError with the path."""
        path = tmp_path / "bad.toml"
        path.write_text("[queue]\nmax_queue_size = -1\n")
        with pytest.raises(ValueError, match="bad.toml"):
            load_config(path)

    def test_no_file_uses_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test defaults when no config file is found."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config()
        assert config.queue.max_queue_size == 200
