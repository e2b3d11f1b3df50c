"""
Unit Tests for Configuration Settings

Tests settings loading, validation, default values and the conversion to
DispatchConfig.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from dispatch_engine.core.config.constants import (
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_CONCURRENCY_CAP,
    DEFAULT_MAX_RETRIES,
    AdmissionBackend,
)
from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.config.settings import Settings, get_settings, reload_settings
from dispatch_engine.core.exceptions import ConfigurationError


@pytest.mark.unit
class TestSettingsInitialization:
    """Test Settings class initialization and defaults."""

    def test_defaults(self):
        settings = Settings()

        assert settings.CONCURRENCY_CAP == DEFAULT_CONCURRENCY_CAP
        assert settings.MAX_RETRIES == DEFAULT_MAX_RETRIES
        assert settings.BASE_RETRY_DELAY_MS == DEFAULT_BASE_RETRY_DELAY_MS
        assert settings.ADMISSION_BACKEND is AdmissionBackend.LOCAL
        assert settings.DECOUPLING_ENABLED is False
        assert settings.LOG_FORMAT == "json"

    def test_section_views(self):
        settings = Settings()

        assert settings.admission.CONCURRENCY_CAP == settings.CONCURRENCY_CAP
        assert settings.retry.RETRY_JITTER is True
        assert settings.buffer.BATCH_SIZE == settings.BATCH_SIZE
        assert settings.redis.ADMISSION_KEY_PREFIX == "dispatch:admission"
        assert settings.redis.ADMISSION_LEASE_SECONDS == settings.ADMISSION_LEASE_SECONDS == 300.0
        assert settings.logging.LOG_LEVEL == "INFO"


@pytest.mark.unit
class TestSettingsLoading:
    """Test settings loading from environment variables."""

    def test_settings_load_from_env_vars(self):
        env_vars = {
            "CONCURRENCY_CAP": "8",
            "REFILL_TOKENS": "120",
            "MAX_RETRIES": "5",
            "DECOUPLING_ENABLED": "true",
            "ADMISSION_BACKEND": "redis",
            "LOG_LEVEL": "debug",
        }

        with patch.dict(os.environ, env_vars):
            settings = Settings()

        assert settings.CONCURRENCY_CAP == 8
        assert settings.REFILL_TOKENS == 120
        assert settings.MAX_RETRIES == 5
        assert settings.DECOUPLING_ENABLED is True
        assert settings.ADMISSION_BACKEND is AdmissionBackend.REDIS
        assert settings.LOG_LEVEL == "DEBUG"

    @pytest.mark.parametrize(
        "name,value",
        [
            ("CONCURRENCY_CAP", "not_a_number"),
            ("CONCURRENCY_CAP", "-1"),
            ("LOG_LEVEL", "VERBOSE"),
            ("ADMISSION_BACKEND", "memcached"),
            ("ADMISSION_LEASE_SECONDS", "0"),
        ],
    )
    def test_invalid_env_values_rejected(self, name, value):
        with patch.dict(os.environ, {name: value}):
            with pytest.raises(ValidationError):
                Settings()

    def test_zero_cap_is_accepted_by_settings(self):
        # Zero is a semantic error reported by DispatchConfig.validate()
        with patch.dict(os.environ, {"CONCURRENCY_CAP": "0"}):
            config = DispatchConfig.from_settings(Settings())

        with pytest.raises(ConfigurationError):
            config.validate()


@pytest.mark.unit
class TestGetSettingsFunction:
    def test_get_settings_is_singleton(self):
        assert get_settings() is get_settings()

    def test_reload_settings_picks_up_environment(self):
        try:
            with patch.dict(os.environ, {"BATCH_SIZE": "25"}):
                assert reload_settings().BATCH_SIZE == 25
        finally:
            reload_settings()


@pytest.mark.unit
class TestDispatchConfig:
    def test_from_settings(self):
        with patch.dict(os.environ, {"CONCURRENCY_CAP": "6", "ORDERING_REQUIRED": "1", "RETRY_JITTER": "false"}):
            config = DispatchConfig.from_settings(Settings())

        assert config.concurrency_cap == 6
        assert config.ordering_required is True
        assert config.jitter is False

    def test_derived_values(self):
        config = DispatchConfig(
            concurrency_cap=5,
            refill_tokens=500,
            refill_interval_seconds=60.0,
            base_retry_delay_ms=200,
            poll_interval_ms=250,
        )

        assert config.effective_in_flight_ceiling == 10
        assert config.refill_rate_per_second == pytest.approx(500 / 60)
        assert config.base_retry_delay_seconds == pytest.approx(0.2)
        assert config.max_retry_delay_seconds is None
        assert config.poll_interval_seconds == pytest.approx(0.25)

    def test_with_overrides_returns_new_config(self):
        config = DispatchConfig()
        changed = config.with_overrides(max_retries=7)

        assert changed.max_retries == 7
        assert config.max_retries == DEFAULT_MAX_RETRIES

    @pytest.mark.parametrize(
        "overrides",
        [
            {"concurrency_cap": 0},
            {"rate_bucket_capacity": 0},
            {"refill_interval_seconds": 0},
            {"max_retries": -1},
            {"base_retry_delay_ms": -5},
            {"in_flight_ceiling": 1},
            {"decoupling_enabled": True, "buffer_capacity": 0},
            {"decoupling_enabled": True, "buffer_partitions": 0},
        ],
    )
    def test_validate_rejects(self, overrides):
        with pytest.raises(ConfigurationError):
            DispatchConfig(**overrides).validate()

    def test_partitions_ignored_in_ordering_mode(self):
        DispatchConfig(decoupling_enabled=True, ordering_required=True, buffer_partitions=0).validate()

    def test_validation_error_carries_details(self):
        with pytest.raises(ConfigurationError) as exc_info:
            DispatchConfig(concurrency_cap=0).validate()

        assert exc_info.value.details["concurrency_cap"] == 0
