"""
feed_config — tunable defaults for feed-pager.

Every value can be overridden with a FEEDPAGER_* environment variable (or a
.env file). The numeric thresholds are heuristics, not derived constants;
tune them per feed.

    FEEDPAGER_PAGE_SIZE=20 feedpager browse posts.json
"""

from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PAGE_SIZE                     = 15
CLIENT_MODE_THRESHOLD         = 100    # remote totals below this are held and sliced locally
LARGE_DATASET_WARN_THRESHOLD  = 1000
LARGE_DATASET_ERROR_THRESHOLD = 2000
SMALL_DATASET_THRESHOLD       = 30     # client mode below this is flagged as inefficient
VALIDATION_TIMEOUT_MS         = 250
REQUEST_TIMEOUT               = 15.0   # seconds, per page request
CACHE_TTL                     = 30     # seconds, HTTP page cache; 0 disables


class FeedConfig(BaseSettings):
    """
    Configuration for one feed instance. Pass explicitly to FeedManager; a
    manager never reads the environment on its own. Keyword arguments beat
    FEEDPAGER_* variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="FEEDPAGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    page_size:                     int   = PAGE_SIZE
    client_mode_threshold:         int   = CLIENT_MODE_THRESHOLD
    large_dataset_warn_threshold:  int   = LARGE_DATASET_WARN_THRESHOLD
    large_dataset_error_threshold: int   = LARGE_DATASET_ERROR_THRESHOLD
    small_dataset_threshold:       int   = SMALL_DATASET_THRESHOLD
    validation_timeout_ms:         int   = VALIDATION_TIMEOUT_MS
    request_timeout:               float = REQUEST_TIMEOUT
    cache_ttl:                     int   = CACHE_TTL

    @field_validator("page_size")
    @classmethod
    def validate_page_size(cls, v):
        if v < 1:
            raise ValueError(f"page_size must be >= 1, got {v}")
        return v

    @field_validator("validation_timeout_ms", "client_mode_threshold", "cache_ttl")
    @classmethod
    def validate_non_negative(cls, v, info):
        if v < 0:
            raise ValueError(f"{info.field_name} must be >= 0, got {v}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self):
        if self.large_dataset_error_threshold < self.large_dataset_warn_threshold:
            raise ValueError("large_dataset_error_threshold must be >= large_dataset_warn_threshold")
        return self

    @classmethod
    def from_env(cls, **overrides) -> "FeedConfig":
        """Settings from the environment; keyword overrides that are not None win."""
        unknown = set(overrides) - set(cls.model_fields)
        if unknown:
            raise TypeError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict:
        return self.model_dump()


class ServiceSettings(BaseSettings):
    """Where the CLI and the inspection server find content."""

    model_config = SettingsConfigDict(
        env_prefix="FEEDPAGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    content_url: str        = ""
    data_file:   str | None = None
    token:       str | None = None


@lru_cache
def get_service_settings() -> ServiceSettings:
    """Get cached service settings instance."""
    return ServiceSettings()


# Built-in defaults only; nothing is read from the environment.
DEFAULT_CONFIG = FeedConfig.model_construct()

CONTENT_URL = get_service_settings().content_url
