"""YAML loading for the rebalance engine settings, held as a process-wide instance."""

import logging
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import ValidationError

from .models import AppConfig

logger = logging.getLogger(__name__)

_config: Optional[AppConfig] = None


def load_config(config_path: Union[str, Path]) -> AppConfig:
    """
    Read config.yaml and install it as the current engine settings.

    An empty file yields every section's defaults.

    Raises:
        FileNotFoundError: no file at config_path
        ValueError: a section fails validation
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    raw = yaml.safe_load(path.read_text()) or {}
    try:
        config = AppConfig.model_validate(raw)
    except ValidationError as e:
        logger.error(f"Rejected {path}: {e.error_count()} invalid setting(s)")
        raise ValueError(f"Invalid configuration: {e}") from e

    logger.info(f"Loaded {path}: store={config.store.backend}, "
                f"watchdog {config.watchdog.timeout_seconds}s x{config.watchdog.max_attempts}, "
                f"target cash {config.engine.default_target_cash_percent}%")
    return set_config(config)


def set_config(config: AppConfig) -> AppConfig:
    global _config
    _config = config
    return config


def get_config() -> AppConfig:
    """Current engine settings; RuntimeError until load_config or set_config has run"""
    if _config is None:
        raise RuntimeError("Rebalance engine settings not loaded; call load_config() first")
    return _config
