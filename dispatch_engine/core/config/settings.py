#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
record-dispatch engine. All configuration is centralized here to ensure
consistency across modules.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Easy testing with override mechanisms

Semantic checks (zero caps, ceiling below cap) live in
DispatchConfig.validate() so that they surface as ConfigurationError.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dispatch_engine.core.config.constants import (
    ADMISSION_LEASE_SECONDS,
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_BUFFER_CAPACITY,
    DEFAULT_BUFFER_PARTITIONS,
    DEFAULT_CONCURRENCY_CAP,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_RATE_BUCKET_CAPACITY,
    DEFAULT_REFILL_INTERVAL_SECONDS,
    DEFAULT_REFILL_TOKENS,
    AdmissionBackend,
)


class AdmissionSettings(BaseSettings):
    """
    Admission limiter configuration.

    STAGE-3: Concurrency cap and token-bucket burst control

    The bucket refills at REFILL_TOKENS per REFILL_INTERVAL_SECONDS, capped
    at RATE_BUCKET_CAPACITY.
    """

    CONCURRENCY_CAP: int = Field(default=DEFAULT_CONCURRENCY_CAP, ge=0, description="Max concurrent invocations")
    RATE_BUCKET_CAPACITY: int = Field(default=DEFAULT_RATE_BUCKET_CAPACITY, ge=0, description="Token bucket capacity (burst)")
    REFILL_TOKENS: float = Field(default=DEFAULT_REFILL_TOKENS, ge=0, description="Tokens minted per refill interval")
    REFILL_INTERVAL_SECONDS: float = Field(default=DEFAULT_REFILL_INTERVAL_SECONDS, ge=0, description="Refill interval in seconds")
    IN_FLIGHT_CEILING: int = Field(default=0, ge=0, description="Records in flight or awaiting admission (0 = 2x cap)")
    ADMISSION_BACKEND: AdmissionBackend = Field(default=AdmissionBackend.LOCAL, description="local or redis")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RetrySettings(BaseSettings):
    """
    Retry policy configuration.

    STAGE-R: Exponential backoff with optional jitter
    """

    MAX_RETRIES: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, description="Attempts before giving up")
    BASE_RETRY_DELAY_MS: int = Field(default=DEFAULT_BASE_RETRY_DELAY_MS, ge=0, description="Base delay for backoff")
    MAX_RETRY_DELAY_MS: int = Field(default=0, ge=0, description="Backoff cap (0 = uncapped)")
    RETRY_JITTER: bool = Field(default=True, description="Scale delays by uniform [0.5, 1.0]")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class BufferSettings(BaseSettings):
    """
    Decoupling mode configuration.

    STAGE-B: Backpressure buffer and batch consumer
    """

    DECOUPLING_ENABLED: bool = Field(default=False, description="Route records through the buffer")
    BATCH_SIZE: int = Field(default=DEFAULT_BATCH_SIZE, ge=0, description="Max records per batch")
    POLL_INTERVAL_MS: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=0, description="Batch polling interval")
    BUFFER_CAPACITY: int = Field(default=DEFAULT_BUFFER_CAPACITY, ge=0, description="Buffered records before enqueue blocks")
    BUFFER_PARTITIONS: int = Field(default=DEFAULT_BUFFER_PARTITIONS, ge=0, description="Partitions when ordering is not required")
    ORDERING_REQUIRED: bool = Field(default=False, description="Strict FIFO delivery across the buffer")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class RedisSettings(BaseSettings):
    """
    Redis configuration for the distributed admission backend.

    STAGE-0.1: Redis connection configuration
    """

    REDIS_URL: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    ADMISSION_KEY_PREFIX: str = Field(default="dispatch:admission", description="Key prefix for shared counters")
    ADMISSION_LEASE_SECONDS: float = Field(default=ADMISSION_LEASE_SECONDS, gt=0, description="Expiry of an unreleased shared slot")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration

    Architectural Decision: structlog for production-grade logging
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from dispatch_engine.core.config.settings import get_settings

        settings = get_settings()
        cap = settings.admission.CONCURRENCY_CAP
    """

    # Admission settings
    CONCURRENCY_CAP: int = Field(default=DEFAULT_CONCURRENCY_CAP, ge=0, description="Max concurrent invocations")
    RATE_BUCKET_CAPACITY: int = Field(default=DEFAULT_RATE_BUCKET_CAPACITY, ge=0, description="Token bucket capacity (burst)")
    REFILL_TOKENS: float = Field(default=DEFAULT_REFILL_TOKENS, ge=0, description="Tokens minted per refill interval")
    REFILL_INTERVAL_SECONDS: float = Field(default=DEFAULT_REFILL_INTERVAL_SECONDS, ge=0, description="Refill interval in seconds")
    IN_FLIGHT_CEILING: int = Field(default=0, ge=0, description="Records in flight or awaiting admission (0 = 2x cap)")
    ADMISSION_BACKEND: AdmissionBackend = Field(default=AdmissionBackend.LOCAL, description="local or redis")

    # Retry settings
    MAX_RETRIES: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, description="Attempts before giving up")
    BASE_RETRY_DELAY_MS: int = Field(default=DEFAULT_BASE_RETRY_DELAY_MS, ge=0, description="Base delay for backoff")
    MAX_RETRY_DELAY_MS: int = Field(default=0, ge=0, description="Backoff cap (0 = uncapped)")
    RETRY_JITTER: bool = Field(default=True, description="Scale delays by uniform [0.5, 1.0]")

    # Buffer settings
    DECOUPLING_ENABLED: bool = Field(default=False, description="Route records through the buffer")
    BATCH_SIZE: int = Field(default=DEFAULT_BATCH_SIZE, ge=0, description="Max records per batch")
    POLL_INTERVAL_MS: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=0, description="Batch polling interval")
    BUFFER_CAPACITY: int = Field(default=DEFAULT_BUFFER_CAPACITY, ge=0, description="Buffered records before enqueue blocks")
    BUFFER_PARTITIONS: int = Field(default=DEFAULT_BUFFER_PARTITIONS, ge=0, description="Partitions when ordering is not required")
    ORDERING_REQUIRED: bool = Field(default=False, description="Strict FIFO delivery across the buffer")

    # Redis settings
    REDIS_URL: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    ADMISSION_KEY_PREFIX: str = Field(default="dispatch:admission", description="Key prefix for shared counters")
    ADMISSION_LEASE_SECONDS: float = Field(default=ADMISSION_LEASE_SECONDS, gt=0, description="Expiry of an unreleased shared slot")

    # Summary settings
    KEEP_RECORD_OUTCOMES: bool = Field(default=True, description="Keep per-record outcomes in the summary")

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @property
    def admission(self) -> AdmissionSettings:
        """Get admission limiter settings."""
        return AdmissionSettings(
            CONCURRENCY_CAP=self.CONCURRENCY_CAP,
            RATE_BUCKET_CAPACITY=self.RATE_BUCKET_CAPACITY,
            REFILL_TOKENS=self.REFILL_TOKENS,
            REFILL_INTERVAL_SECONDS=self.REFILL_INTERVAL_SECONDS,
            IN_FLIGHT_CEILING=self.IN_FLIGHT_CEILING,
            ADMISSION_BACKEND=self.ADMISSION_BACKEND,
        )

    @property
    def retry(self) -> RetrySettings:
        """Get retry policy settings."""
        return RetrySettings(
            MAX_RETRIES=self.MAX_RETRIES,
            BASE_RETRY_DELAY_MS=self.BASE_RETRY_DELAY_MS,
            MAX_RETRY_DELAY_MS=self.MAX_RETRY_DELAY_MS,
            RETRY_JITTER=self.RETRY_JITTER,
        )

    @property
    def buffer(self) -> BufferSettings:
        """Get decoupling mode settings."""
        return BufferSettings(
            DECOUPLING_ENABLED=self.DECOUPLING_ENABLED,
            BATCH_SIZE=self.BATCH_SIZE,
            POLL_INTERVAL_MS=self.POLL_INTERVAL_MS,
            BUFFER_CAPACITY=self.BUFFER_CAPACITY,
            BUFFER_PARTITIONS=self.BUFFER_PARTITIONS,
            ORDERING_REQUIRED=self.ORDERING_REQUIRED,
        )

    @property
    def redis(self) -> RedisSettings:
        """Get Redis settings."""
        return RedisSettings(
            REDIS_URL=self.REDIS_URL,
            REDIS_SOCKET_TIMEOUT=self.REDIS_SOCKET_TIMEOUT,
            ADMISSION_KEY_PREFIX=self.ADMISSION_KEY_PREFIX,
            ADMISSION_LEASE_SECONDS=self.ADMISSION_LEASE_SECONDS,
        )

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    STAGE-0.3: Settings initialization

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
