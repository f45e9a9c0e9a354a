"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
"""

import logging
import os
from functools import lru_cache
from typing import Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from alert_engine.domain.models import Severity

# Load environment variables from .env file
load_dotenv()

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _default_sla_minutes() -> dict[Severity, int]:
    return {
        Severity.CRITICAL: 30,
        Severity.HIGH: 120,
        Severity.MEDIUM: 480,
        Severity.LOW: 1440,
    }


def _default_escalation_delays() -> dict[Severity, int | None]:
    # LOW alerts are never auto-escalated
    return {
        Severity.CRITICAL: 30,
        Severity.HIGH: 120,
        Severity.MEDIUM: 240,
        Severity.LOW: None,
    }


class EngineConfig(BaseModel):
    """Evaluation orchestrator and lifecycle settings."""

    retry_attempts: int = Field(
        default=3, gt=0, description="Attempts for storage calls before a rule is marked failed"
    )
    retry_backoff_seconds: float = Field(
        default=0.2, ge=0.0, description="Base delay for exponential backoff between attempts"
    )
    max_concurrent_patients: int = Field(
        default=10, gt=0, description="Patients evaluated in parallel during batch replay"
    )
    trend_uses_regression: bool = Field(
        default=True, description="Require the regression slope to agree with the trend delta"
    )
    sla_minutes: dict[Severity, int] = Field(
        default_factory=_default_sla_minutes, description="Response deadline per severity"
    )
    escalation_delay_minutes: dict[Severity, int | None] = Field(
        default_factory=_default_escalation_delays,
        description="Delay after SLA breach before escalating (None disables)",
    )
    escalation_targets: list[str] = Field(
        default_factory=lambda: ["supervisor"], description="Roles notified on SLA escalation"
    )
    claim_timeout_minutes: int = Field(
        default=60, gt=0, description="Minutes a clinician may hold a claim before it is released"
    )

    @field_validator("sla_minutes")
    def every_severity_has_sla(cls, v: dict[Severity, int]) -> dict[Severity, int]:
        missing = set(Severity) - set(v)
        if missing:
            raise ValueError(f"SLA minutes missing for: {sorted(s.value for s in missing)}")
        return v


class CatalogConfig(BaseModel):
    """Rule catalog cache settings."""

    refresh_interval_seconds: float = Field(
        default=300.0, gt=0.0, description="Maximum age of the cached rule set"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default="INFO", description="Logging level")
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> LogLevel:
        v = val.strip().upper()
        return cast(LogLevel, v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO")

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    engine_config = EngineConfig(
        retry_attempts=int(os.getenv("ENGINE_RETRY_ATTEMPTS", "3")),
        retry_backoff_seconds=float(os.getenv("ENGINE_RETRY_BACKOFF_SECONDS", "0.2")),
        max_concurrent_patients=int(os.getenv("ENGINE_MAX_CONCURRENT_PATIENTS", "10")),
        trend_uses_regression=_parse_bool(os.getenv("ENGINE_TREND_REGRESSION"), True),
        claim_timeout_minutes=int(os.getenv("ENGINE_CLAIM_TIMEOUT_MINUTES", "60")),
    )

    catalog_config = CatalogConfig(
        refresh_interval_seconds=float(os.getenv("CATALOG_REFRESH_SECONDS", "300")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        engine=engine_config,
        catalog=catalog_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig) -> None:
    """Apply level and renderer to structlog and the stdlib root logger."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))
    logging.getLogger().setLevel(getattr(logging, config.level))

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\n🔧 CONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\n🚨 ENGINE CONFIGURATION")
    print(f"Retry Attempts: {config.engine.retry_attempts}")
    print(f"Retry Backoff: {config.engine.retry_backoff_seconds}s")
    print(f"Max Concurrent Patients: {config.engine.max_concurrent_patients}")
    print(f"Trend Regression Check: {config.engine.trend_uses_regression}")
    print(f"Claim Timeout: {config.engine.claim_timeout_minutes} minutes")

    print("\n📚 CATALOG CONFIGURATION")
    print(f"Refresh Interval: {config.catalog.refresh_interval_seconds}s")


if __name__ == "__main__":
    print_config_summary()
