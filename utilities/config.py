"""
Configuration management using environment variables.
Handles tracker, scheduler and threshold settings with validation and defaults.
"""

from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class TrackerConfig(BaseSettings):
    """
    Configuration class for the release tracker.
    Uses pydantic BaseSettings for environment variable management.
    """

    # MongoDB Configuration
    mongodb_url: str = Field(default="mongodb://localhost:27017")
    mongodb_database: str = Field(default="release_tracker")
    mongodb_collection: str = Field(default="tracked_releases")

    # Listing collaborator
    listing_api_url: str = Field(default="http://localhost:8080/api/listings")
    request_timeout: int = Field(default=30)
    retry_attempts: int = Field(default=2)
    retry_delay: float = Field(default=1.0)
    rate_limit_per_second: float = Field(default=2.0)
    listing_cache_ttl_minutes: int = Field(default=30)

    # Optional external classifier
    classifier_url: Optional[str] = Field(default=None)
    classifier_timeout: int = Field(default=15)
    classifier_weight: float = Field(default=0.3)
    classifier_min_confidence: float = Field(default=0.6)

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default="logs/tracker.log")

    # Development/Testing
    debug: bool = Field(default=False)

    # Scheduler Configuration
    timezone: str = Field(default="UTC")
    tick_interval_seconds: int = Field(default=300)
    cache_refresh_minutes: int = Field(default=30)
    cache_refresh_initial_delay_seconds: int = Field(default=30)
    title_normalization_hours: int = Field(default=24)
    status_preview_size: int = Field(default=10)

    # Detection thresholds
    auto_apply_confidence: float = Field(default=0.8)
    queue_min_confidence: float = Field(default=0.3)
    relation_similarity_threshold: float = Field(default=0.5)
    listing_match_threshold: float = Field(default=0.8)
    freshness_window_hours: int = Field(default=24)

    @field_validator('request_timeout', 'classifier_timeout')
    @classmethod
    def validate_timeout(cls, v):
        """Ensure timeout is reasonable."""
        if v < 1 or v > 300:
            raise ValueError('timeouts must be between 1 and 300 seconds')
        return v

    @field_validator('retry_attempts')
    @classmethod
    def validate_retry_attempts(cls, v):
        """Ensure retry attempts is reasonable."""
        if v < 0 or v > 10:
            raise ValueError('retry_attempts must be between 0 and 10')
        return v

    @field_validator('rate_limit_per_second')
    @classmethod
    def validate_rate_limit(cls, v):
        """Ensure rate limit is reasonable."""
        if v < 0.1 or v > 10:
            raise ValueError('rate_limit_per_second must be between 0.1 and 10')
        return v

    @field_validator(
        'auto_apply_confidence',
        'queue_min_confidence',
        'relation_similarity_threshold',
        'listing_match_threshold',
        'classifier_weight',
        'classifier_min_confidence',
    )
    @classmethod
    def validate_unit_interval(cls, v):
        """Thresholds and weights live in [0, 1]."""
        if v < 0.0 or v > 1.0:
            raise ValueError('thresholds must be between 0.0 and 1.0')
        return v

    @field_validator('tick_interval_seconds')
    @classmethod
    def validate_tick_interval(cls, v):
        """Ensure the driver tick is not a busy loop."""
        if v < 10:
            raise ValueError('tick_interval_seconds must be at least 10')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of: {valid_levels}')
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        """Ensure log format is valid."""
        valid_formats = ['json', 'console']
        if v.lower() not in valid_formats:
            raise ValueError(f'log_format must be one of: {valid_formats}')
        return v.lower()

    @model_validator(mode='after')
    def validate_threshold_order(self):
        """The queueing floor cannot sit above the auto-apply bar."""
        if self.queue_min_confidence > self.auto_apply_confidence:
            raise ValueError('queue_min_confidence must not exceed auto_apply_confidence')
        return self

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def get_user_agent(self) -> str:
        """Get user agent string for outbound requests."""
        return "ReleaseTracker/1.0"

    def get_headers(self) -> dict:
        """Get default headers for HTTP requests."""
        return {
            "User-Agent": self.get_user_agent(),
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
        }


# Global configuration instance
config = TrackerConfig()
