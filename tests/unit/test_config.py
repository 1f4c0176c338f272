"""
Tests for YAML configuration loading and validation.
"""
import pytest

from rebalance_engine.config import loader
from rebalance_engine.config.loader import get_config, load_config, set_config
from rebalance_engine.config.models import AppConfig
from rebalance_engine.container import build_container


@pytest.fixture(autouse=True)
def reset_config():
    loader._config = None
    yield
    loader._config = None


def test_load_config_reads_sections(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "engine:\n"
        "  default_target_cash_percent: 15\n"
        "watchdog:\n"
        "  timeout_seconds: 60\n"
        "  max_attempts: 2\n"
        "store:\n"
        "  backend: redis\n"
    )

    config = load_config(path)

    assert config.engine.default_target_cash_percent == 15
    assert config.watchdog.max_attempts == 2
    assert config.store.backend == "redis"
    assert config.extraction.base_output_budget == 1500
    assert get_config() is config


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")

    config = load_config(path)

    assert config.watchdog.timeout_seconds == 180.0
    assert config.store.backend == "memory"


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_invalid_values_raise_value_error(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("watchdog:\n  timeout_seconds: 0\n")

    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(path)


def test_non_mapping_document_raises_value_error(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- engine\n- watchdog\n")

    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(path)


def test_get_config_before_load_raises():
    with pytest.raises(RuntimeError):
        get_config()


def test_set_config_installs_instance():
    config = AppConfig()

    assert set_config(config) is get_config()


def test_container_builds_typed_sections():
    config = AppConfig.model_validate({"watchdog": {"timeout_seconds": 30, "max_attempts": 5}})

    container = build_container(config)

    watchdog = container.watchdog_config()
    assert watchdog.timeout_seconds == 30
    assert watchdog.max_attempts == 5
    assert container.worker().watchdog is watchdog
    assert container.engine().store is container.record_store()
