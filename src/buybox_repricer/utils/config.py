"""
Configuration management for the Buy Box Repricer.

Provides centralized configuration loading and validation using Pydantic models.
Settings come from environment variables (prefix ``REPRICER_``) or a ``.env``
file and are exposed through typed sub-configurations for the scheduler, the
retry policy, credit costs and general application behaviour.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)


class SchedulerConfig(BaseModel):
    """Recurring tick configuration."""

    tick_interval_seconds: int = Field(default=900, description="Seconds between scheduled ticks")
    worker_concurrency: int = Field(default=5, description="Listings processed concurrently per tick")
    timezone: str = Field(default="UTC", description="Scheduler timezone")
    call_timeout_seconds: float = Field(default=15.0, description="Timeout for each external call")

    @field_validator('tick_interval_seconds', 'worker_concurrency')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('call_timeout_seconds')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v


class RetryPolicyConfig(BaseModel):
    """Backoff policy for transient marketplace failures."""

    max_attempts: int = Field(default=3, description="Total attempts per external call")
    base_delay: float = Field(default=0.5, description="Delay before the first retry in seconds")
    exponential_base: float = Field(default=2.0, description="Backoff multiplier")
    max_delay: float = Field(default=30.0, description="Maximum delay in seconds")
    jitter: bool = Field(default=True, description="Add random jitter on top of the delay")

    @field_validator('max_attempts')
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("At least one attempt is required")
        return v


class CreditCostConfig(BaseModel):
    """Credits charged per metered action."""

    monitoring: int = Field(default=1, description="Credits per buy box check")
    repricing: int = Field(default=5, description="Credits per applied price change")
    ledger_url: Optional[str] = Field(default=None, description="Remote credit ledger base URL")
    ledger_api_key: Optional[str] = Field(default=None, description="Remote credit ledger API key")

    @field_validator('monitoring', 'repricing')
    @classmethod
    def validate_cost(cls, v):
        if v < 0:
            raise ValueError("Credit cost cannot be negative")
        return v


class ApplicationConfig(BaseModel):
    """General application configuration."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_dir: str = Field(default="./logs", description="Log files directory")
    log_to_file: bool = Field(default=True, description="Write rotating log files")
    debug_mode: bool = Field(default=False, description="Debug mode flag")
    database_url: str = Field(default="sqlite:///./repricer.db", description="Persistence database URL")
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN")
    sentry_environment: str = Field(default="development", description="Sentry environment")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


class RepricerConfig(BaseSettings):
    """Main application configuration combining all sub-configurations."""

    model_config = SettingsConfigDict(
        env_prefix="REPRICER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    tick_interval_seconds: int = 900
    worker_concurrency: int = 5
    timezone: str = "UTC"
    call_timeout_seconds: float = 15.0

    retry_max_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_exponential_base: float = 2.0
    retry_max_delay: float = 30.0
    retry_jitter: bool = True

    monitoring_credit_cost: int = 1
    repricing_credit_cost: int = 5
    credit_ledger_url: Optional[str] = None
    credit_ledger_api_key: Optional[str] = None

    database_url: str = "sqlite:///./repricer.db"
    encryption_master_key: Optional[str] = None

    log_level: str = "INFO"
    log_dir: str = "./logs"
    log_to_file: bool = True
    debug_mode: bool = False

    sentry_dsn: Optional[str] = None
    sentry_environment: str = "development"

    @property
    def scheduler(self) -> SchedulerConfig:
        """Get scheduler configuration."""
        return SchedulerConfig(
            tick_interval_seconds=self.tick_interval_seconds,
            worker_concurrency=self.worker_concurrency,
            timezone=self.timezone,
            call_timeout_seconds=self.call_timeout_seconds,
        )

    @property
    def retry(self) -> RetryPolicyConfig:
        """Get retry policy configuration."""
        return RetryPolicyConfig(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            exponential_base=self.retry_exponential_base,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    @property
    def credits(self) -> CreditCostConfig:
        """Get credit cost configuration."""
        return CreditCostConfig(
            monitoring=self.monitoring_credit_cost,
            repricing=self.repricing_credit_cost,
            ledger_url=self.credit_ledger_url,
            ledger_api_key=self.credit_ledger_api_key,
        )

    @property
    def app(self) -> ApplicationConfig:
        """Get application configuration."""
        return ApplicationConfig(
            log_level=self.log_level,
            log_dir=self.log_dir,
            log_to_file=self.log_to_file,
            debug_mode=self.debug_mode,
            database_url=self.database_url,
            sentry_dsn=self.sentry_dsn,
            sentry_environment=self.sentry_environment,
        )


# Global configuration instance
_config: Optional[RepricerConfig] = None


def get_config() -> RepricerConfig:
    """
    Get the global configuration instance.

    Returns:
        RepricerConfig: Validated configuration instance.

    Raises:
        ValueError: If configuration validation fails.
    """
    global _config

    if _config is None:
        try:
            _config = RepricerConfig()
        except Exception as e:
            raise ValueError(f"Configuration validation failed: {e}")

    return _config


def reload_config() -> RepricerConfig:
    """
    Reload configuration from environment variables.

    Returns:
        RepricerConfig: New validated configuration instance.
    """
    global _config
    _config = None
    return get_config()


def validate_configuration() -> Dict[str, Any]:
    """
    Validate current configuration and return status information.

    Sub-configurations are built eagerly so their validators run.

    Returns:
        Dict containing validation results and configuration summary.
    """
    try:
        config = get_config()

        scheduler = config.scheduler
        retry = config.retry
        credits = config.credits
        app = config.app

        return {
            "valid": True,
            "timestamp": datetime.now().isoformat(),
            "summary": {
                "scheduler": scheduler.model_dump(),
                "retry": retry.model_dump(),
                "credits": {
                    "monitoring": credits.monitoring,
                    "repricing": credits.repricing,
                    "remote_ledger": bool(credits.ledger_url),
                },
                "application": {
                    "log_level": app.log_level,
                    "log_dir": str(Path(app.log_dir).absolute()),
                    "debug_mode": app.debug_mode,
                    "database": app.database_url.split("://", 1)[0],
                    "sentry_enabled": bool(app.sentry_dsn),
                    "has_encryption_key": bool(config.encryption_master_key),
                },
            },
        }

    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        return {
            "valid": False,
            "error": str(e),
            "timestamp": datetime.now().isoformat(),
        }
