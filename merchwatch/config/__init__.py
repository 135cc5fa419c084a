"""Configuration package (schema, loaders, environment overrides)."""

from .errors import ConfigLoaderError
from .models import (
    AppConfig,
    CrawlerSettings,
    DelayConfig,
    EffectiveSettings,
    KeywordSettings,
    NetworkConfig,
    RetryPolicy,
    RuntimeConfig,
    SchedulerConfig,
    StateConfig,
)

__all__ = [
    "AppConfig",
    "ConfigLoaderError",
    "CrawlerSettings",
    "DelayConfig",
    "EffectiveSettings",
    "KeywordSettings",
    "NetworkConfig",
    "RetryPolicy",
    "RuntimeConfig",
    "SchedulerConfig",
    "StateConfig",
]
