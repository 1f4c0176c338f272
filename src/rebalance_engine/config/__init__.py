"""Configuration management for the rebalance engine."""

from .models import (
    AppConfig,
    EngineConfig,
    ExtractionConfig,
    SizingConfig,
    WatchdogConfig,
    NotifierConfig,
    BrokerConfig,
    GenerationConfig,
    RedisConfig,
    StoreConfig,
    ApiConfig,
    LoggingConfig,
)
from .loader import load_config, get_config, set_config

__all__ = [
    "AppConfig",
    "EngineConfig",
    "ExtractionConfig",
    "SizingConfig",
    "WatchdogConfig",
    "NotifierConfig",
    "BrokerConfig",
    "GenerationConfig",
    "RedisConfig",
    "StoreConfig",
    "ApiConfig",
    "LoggingConfig",
    "load_config",
    "get_config",
    "set_config",
]
