"""
Configuration Module
====================

Application configuration using pydantic-settings.
All settings can be overridden via environment variables.

Environment variables (most used):
    SYMBOLS             - Symbols ingested by the scheduler (default: BTC/USD, ETH/USD)
    FEEDS               - Feed identifiers queried each cycle (default: binance)
    FEED_TIMEOUT_SEC    - Per-feed fetch timeout (default: 5.0)
    INGEST_INTERVAL_SEC - Seconds between ingestion cycles (default: 1.0)
    MODEL_VERSION       - Version id of the built-in scoring model
    LOG_LEVEL           - Logging level (default: INFO)
    HTTP_HOST           - HTTP server host (default: 0.0.0.0)
    HTTP_PORT           - HTTP server port (default: 8000)

Production notes:
    - FEED_TIMEOUT_SEC bounds every external fetch; a slow feed reports
      status=error for that cycle and is retried on the next one
    - RISK_* values are read once at startup; restart to change limits
"""

import logging
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tickflow.types import RiskLimits


class Settings(BaseSettings):
    """
    Application settings.

    All fields can be configured via environment variables.
    Example: FEEDS='["binance"]' INGEST_INTERVAL_SEC=2 python -m tickflow
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================================================
    # Feeds
    # ========================================================================

    FEEDS: list[str] = Field(
        default=["binance"],
        description="Feed identifiers queried by the scheduler each cycle",
    )
    FEED_TIMEOUT_SEC: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Per-feed fetch timeout (seconds)",
    )
    FEED_STALE_MIN_MESSAGES: int = Field(
        default=1,
        ge=0,
        description="A feed returning fewer ticks than this is reported as stale",
    )
    BINANCE_REST_BASE: str = Field(
        default="https://api.binance.com",
        description="Binance Spot REST API base URL",
    )
    BOOK_DEPTH_LIMIT: int = Field(
        default=10,
        ge=5,
        le=100,
        description="Order book levels requested per symbol",
    )
    REPLAY_FILE: str = Field(
        default="",
        description="JSONL file served by the 'replay' feed (empty = disabled)",
    )

    # ========================================================================
    # Ingestion
    # ========================================================================

    SYMBOLS: list[str] = Field(
        default=["BTC/USD", "ETH/USD"],
        description="Symbols ingested by the scheduler",
    )
    INGEST_INTERVAL_SEC: float = Field(
        default=1.0,
        ge=0.1,
        description="Interval between ingestion cycles (seconds)",
    )
    DEDUP_BUCKET_MS: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Timestamp bucket used for tick deduplication (ms)",
    )
    TICK_BUFFER_SIZE: int = Field(
        default=1000,
        ge=10,
        le=100_000,
        description="Trailing ticks kept per symbol (oldest evicted first)",
    )

    # ========================================================================
    # Features
    # ========================================================================

    MIN_WINDOW_TICKS: int = Field(
        default=10,
        ge=10,
        description="Minimum ticks required by the full feature path",
    )
    FEATURE_WINDOW_TICKS: int = Field(
        default=50,
        ge=10,
        le=1000,
        description="Trailing ticks passed to the full feature path",
    )
    STREAM_WINDOW_TICKS: int = Field(
        default=5,
        ge=2,
        le=50,
        description="Ticks used by the fast streaming feature path",
    )
    TOPN: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Order book levels used for imbalance features",
    )

    # ========================================================================
    # Inference
    # ========================================================================

    MODEL_VERSION: str = Field(
        default="linear-v1",
        description="Version id of the built-in linear scoring model",
    )
    MODEL_AUTO_DEPLOY: bool = Field(
        default=True,
        description="Deploy the built-in model at startup",
    )
    CONFIDENCE_CAP: float = Field(
        default=0.95,
        gt=0.0,
        le=1.0,
        description="Confidence ceiling for the full prediction path",
    )
    STREAM_CONFIDENCE_CAP: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="Confidence ceiling for the streaming prediction path",
    )
    LATENCY_BUDGET_AVG_MS: float = Field(
        default=2.0,
        gt=0.0,
        description="Average inference latency target (ms)",
    )
    LATENCY_BUDGET_P95_MS: float = Field(
        default=5.0,
        gt=0.0,
        description="p95 inference latency target (ms)",
    )

    # ========================================================================
    # Drift
    # ========================================================================

    DRIFT_MIN_SAMPLES: int = Field(
        default=50,
        ge=2,
        description="Minimum predictions for an on-demand drift check",
    )
    DRIFT_SCHEDULED_MIN_SAMPLES: int = Field(
        default=100,
        ge=2,
        description="Minimum predictions for the scheduled drift check",
    )
    DRIFT_LOOKBACK_SEC: int = Field(
        default=3600,
        ge=60,
        description="Lookback window for drift checks (seconds)",
    )
    DRIFT_CHECK_INTERVAL_SEC: float = Field(
        default=300.0,
        ge=1.0,
        description="Interval between scheduled drift checks (seconds)",
    )
    CONFIDENCE_DECLINE_THRESHOLD: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        description="Mean confidence decline that raises confidence_drift",
    )
    LATENCY_INCREASE_THRESHOLD_MS: float = Field(
        default=0.5,
        gt=0.0,
        description="Mean latency increase (ms) that raises latency_drift",
    )
    LOW_CONFIDENCE_THRESHOLD: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Single prediction confidence below this raises an alert",
    )
    HIGH_VOLATILITY_THRESHOLD: float = Field(
        default=0.05,
        gt=0.0,
        description="Extracted volatility above this raises an alert",
    )

    # ========================================================================
    # Risk limits (immutable for a session)
    # ========================================================================

    INITIAL_CAPITAL: float = Field(
        default=1_000_000.0,
        gt=0.0,
        description="Starting equity used for leverage",
    )
    RISK_MAX_POSITION_SIZE: float = Field(default=100_000.0, gt=0.0)
    RISK_DAILY_LOSS_LIMIT: float = Field(default=50_000.0, gt=0.0)
    RISK_MAX_DRAWDOWN: float = Field(default=0.15, gt=0.0, lt=1.0)
    RISK_CONCENTRATION_LIMIT: float = Field(default=0.25, gt=0.0)
    RISK_LEVERAGE_LIMIT: float = Field(default=2.0, gt=0.0)
    RISK_STOP_LOSS_PERCENT: float = Field(default=2.0, gt=0.0)
    RISK_TAKE_PROFIT_PERCENT: float = Field(default=4.0, gt=0.0)
    RISK_MAX_CORRELATED_POSITIONS: int = Field(default=5, gt=0)

    # ========================================================================
    # Status
    # ========================================================================

    FEED_HEALTH_WINDOW_SEC: int = Field(
        default=300,
        ge=10,
        description="Window for per-feed tick counts in system status",
    )
    FEED_HEALTH_MIN_TICKS: int = Field(
        default=10,
        ge=0,
        description="A feed needs more ticks than this in the window to be healthy",
    )
    MODEL_STALE_SEC: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        description="Active model older than this is reported stale",
    )
    LATENCY_WINDOW_SEC: int = Field(
        default=3600,
        ge=60,
        description="Window for inference latency health",
    )

    # ========================================================================
    # Persistence
    # ========================================================================

    RECORD_ENABLED: bool = Field(
        default=False,
        description="Mirror prediction logs and drift alerts to JSONL files",
    )
    RECORD_DIR: str = Field(
        default="data/records",
        description="Directory for JSONL mirror files",
    )
    RECORD_BATCH_SIZE: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Records buffered before a JSONL flush",
    )

    # ========================================================================
    # Logging / HTTP
    # ========================================================================

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    HTTP_HOST: str = Field(
        default="0.0.0.0",
        description="HTTP server bind host",
    )
    HTTP_PORT: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="HTTP server bind port",
    )

    @field_validator("FEEDS")
    @classmethod
    def feeds_lowercase(cls, v: list[str]) -> list[str]:
        """Feed identifiers are matched case-insensitively."""
        return [feed.strip().lower() for feed in v if feed.strip()]

    @model_validator(mode="after")
    def validate_and_warn(self) -> "Settings":
        """Cross-field checks and warnings."""
        logger = logging.getLogger(__name__)

        if self.STREAM_CONFIDENCE_CAP > self.CONFIDENCE_CAP:
            logger.warning(
                "config_stream_cap_above_full_cap: streaming predictions may "
                "report higher confidence than the full path"
            )

        if self.LATENCY_BUDGET_AVG_MS > self.LATENCY_BUDGET_P95_MS:
            raise ValueError("LATENCY_BUDGET_AVG_MS must not exceed LATENCY_BUDGET_P95_MS")

        if self.MIN_WINDOW_TICKS > self.FEATURE_WINDOW_TICKS:
            raise ValueError("MIN_WINDOW_TICKS must not exceed FEATURE_WINDOW_TICKS")

        return self

    def risk_limits(self) -> RiskLimits:
        """Build the immutable risk limits for this session."""
        return RiskLimits(
            max_position_size=self.RISK_MAX_POSITION_SIZE,
            daily_loss_limit=self.RISK_DAILY_LOSS_LIMIT,
            max_drawdown=self.RISK_MAX_DRAWDOWN,
            concentration_limit=self.RISK_CONCENTRATION_LIMIT,
            leverage_limit=self.RISK_LEVERAGE_LIMIT,
            stop_loss_percent=self.RISK_STOP_LOSS_PERCENT,
            take_profit_percent=self.RISK_TAKE_PROFIT_PERCENT,
            max_correlated_positions=self.RISK_MAX_CORRELATED_POSITIONS,
        )

    def dump(self) -> dict:
        """
        Dump current configuration as dictionary.
        Useful for logging configuration at startup.

        Returns:
            Dictionary with all configuration values.
        """
        return {
            "feeds": self.FEEDS,
            "feed_timeout_sec": self.FEED_TIMEOUT_SEC,
            "feed_stale_min_messages": self.FEED_STALE_MIN_MESSAGES,
            "binance_rest_base": self.BINANCE_REST_BASE,
            "replay_file": self.REPLAY_FILE or None,
            "symbols": self.SYMBOLS,
            "ingest_interval_sec": self.INGEST_INTERVAL_SEC,
            "dedup_bucket_ms": self.DEDUP_BUCKET_MS,
            "tick_buffer_size": self.TICK_BUFFER_SIZE,
            "min_window_ticks": self.MIN_WINDOW_TICKS,
            "feature_window_ticks": self.FEATURE_WINDOW_TICKS,
            "stream_window_ticks": self.STREAM_WINDOW_TICKS,
            "topn": self.TOPN,
            "model_version": self.MODEL_VERSION,
            "model_auto_deploy": self.MODEL_AUTO_DEPLOY,
            "confidence_cap": self.CONFIDENCE_CAP,
            "stream_confidence_cap": self.STREAM_CONFIDENCE_CAP,
            "latency_budget_avg_ms": self.LATENCY_BUDGET_AVG_MS,
            "latency_budget_p95_ms": self.LATENCY_BUDGET_P95_MS,
            "drift_min_samples": self.DRIFT_MIN_SAMPLES,
            "drift_scheduled_min_samples": self.DRIFT_SCHEDULED_MIN_SAMPLES,
            "drift_check_interval_sec": self.DRIFT_CHECK_INTERVAL_SEC,
            "risk_limits": self.risk_limits().to_dict(),
            "initial_capital": self.INITIAL_CAPITAL,
            "record_enabled": self.RECORD_ENABLED,
            "record_dir": self.RECORD_DIR,
            "log_level": self.LOG_LEVEL,
            "http_host": self.HTTP_HOST,
            "http_port": self.HTTP_PORT,
        }


# Global settings instance
settings = Settings()
