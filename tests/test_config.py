"""
Tests for configuration models and layered loading.
"""

import asyncio
import json

import pytest
from pydantic import ValidationError

from stproc.config import CallOptions, ConnectionSettings, ServiceConfig
from stproc.config_sources import ConfigManager, DictConfigSource, EnvConfigSource, FileConfigSource, load_config
from stproc.drivers.base import SqlDialect


def test_defaults():
    config = ServiceConfig()

    assert config.default_connection == "mysql"
    assert config.default_timeout_ms == 30000
    assert config.pool.max_connections == 10
    assert config.pool.acquire_timeout_ms == 30000
    assert config.pool.idle_timeout_ms == 300000
    assert config.pool.create_retry_attempts == 3
    assert config.retry.max_attempts == 3
    assert config.retry.base_delay_ms == 100
    assert config.retry.max_delay_ms == 30000
    assert config.cache.procedure_exists_enabled is True
    assert config.cache.procedure_exists_ttl_ms == 86400000
    assert config.perf.slow_query_threshold_ms == 2000
    assert config.perf.profiling_enabled is False
    assert config.perf.query_timeout_enabled is True
    assert config.logging.channel == "stp"
    assert config.logging.log_queries and config.logging.log_errors and config.logging.log_execution_time


def test_config_is_frozen():
    config = ServiceConfig()
    with pytest.raises(ValidationError):
        config.default_connection = "other"


@pytest.mark.parametrize("sections", [
    {"pool": {"max_connections": 0}},
    {"retry": {"max_attempts": -1}},
    {"retry": {"base_delay_ms": 0}},
    {"retry": {"max_delay_ms": 1000}},
    {"pool": {"acquire_timeout_ms": -5}},
])
def test_invalid_values_are_rejected(sections):
    with pytest.raises(ValidationError):
        ServiceConfig(**sections)


def test_connection_settings():
    settings = ConnectionSettings(dialect="mariadb", host="db", user="app", database="shop")
    assert settings.dialect == SqlDialect.MARIADB
    assert settings.port == 3306
    assert settings.charset == "utf8mb4"


def test_call_options_resolve_inherits_from_config():
    config = ServiceConfig(retry={"max_attempts": 5, "base_delay_ms": 20}, logging={"enabled": False})
    resolved = CallOptions().resolve(config)

    assert resolved.connection == "mysql"
    assert resolved.timeout_ms == 30000
    assert resolved.max_attempts == 5
    assert resolved.base_delay_ms == 20
    assert resolved.max_delay_ms == 30000
    assert resolved.check_procedure_exists is False
    assert resolved.return_execution_info is False
    assert resolved.logging_enabled is False
    assert resolved.cancelled is False


@pytest.mark.parametrize("options", [
    {"retry": {"max_attempts": 2, "base_delay_ms": 10}},
    {"retry.max_attempts": 2, "retry.base_delay_ms": 10},
    {"retry_max_attempts": 2, "retry_base_delay_ms": 10},
    {"retryAttempts": 2, "retryDelay": 10},
])
def test_call_options_accept_several_shapes(options):
    resolved = CallOptions.from_mapping(options).resolve(ServiceConfig())
    assert resolved.max_attempts == 2
    assert resolved.base_delay_ms == 10


def test_legacy_option_names():
    options = CallOptions.from_mapping({
        "connection": "reporting",
        "checkStoredProcedure": True,
        "returnExecutionInfo": True,
        "enableLogging": False,
        "timeout": 5,
    })

    assert options.connection == "reporting"
    assert options.check_procedure_exists is True
    assert options.return_execution_info is True
    assert options.enable_logging is False
    assert options.timeout_ms == 5000


def test_unknown_option_is_rejected():
    with pytest.raises(ValidationError):
        CallOptions.from_mapping({"retries": 3})


def test_zero_max_attempts_is_allowed_and_cancel_event_is_carried():
    event = asyncio.Event()
    resolved = CallOptions.from_mapping({"retry": {"max_attempts": 0}, "cancel_event": event}).resolve(ServiceConfig())

    assert resolved.max_attempts == 0
    assert resolved.cancelled is False
    event.set()
    assert resolved.cancelled is True


def test_env_source_parses_nested_values():
    source = EnvConfigSource(environ={
        "STPROC_POOL__MAX_CONNECTIONS": "5",
        "STPROC_PERF__PROFILING_ENABLED": "true",
        "STPROC_DEFAULT_CONNECTION": "reporting",
        "STPROC_LOGGING__CHANNEL": "db.calls",
        "STPROC_CONNECTIONS__REPORTING": '{"host": "db", "user": "report"}',
        "OTHER_VALUE": "ignored",
    })

    assert source.get_config() == {
        "pool": {"max_connections": 5},
        "perf": {"profiling_enabled": True},
        "default_connection": "reporting",
        "logging": {"channel": "db.calls"},
        "connections": {"reporting": {"host": "db", "user": "report"}},
    }


def test_file_sources(tmp_path):
    json_file = tmp_path / "stproc.json"
    json_file.write_text(json.dumps({"pool": {"max_connections": 4}}))
    yaml_file = tmp_path / "stproc.yaml"
    yaml_file.write_text("stproc:\n  retry:\n    max_attempts: 1\n")
    toml_file = tmp_path / "stproc.toml"
    toml_file.write_text("[perf]\nslow_query_threshold_ms = 500\n")

    assert FileConfigSource(str(json_file)).get_config() == {"pool": {"max_connections": 4}}
    assert FileConfigSource(str(yaml_file), section="stproc").get_config() == {"retry": {"max_attempts": 1}}
    assert FileConfigSource(str(toml_file)).get_config() == {"perf": {"slow_query_threshold_ms": 500}}
    assert FileConfigSource(str(tmp_path / "missing.json")).get_config() == {}


def test_manager_merges_by_priority():
    manager = ConfigManager()
    manager.add_source(DictConfigSource({"pool": {"max_connections": 50, "idle_timeout_ms": 10}}), priority=30)
    manager.add_source(DictConfigSource({"pool": {"max_connections": 2, "acquire_timeout_ms": 7}}), priority=10)

    config = manager.get_service_config()
    assert config.pool.max_connections == 50
    assert config.pool.idle_timeout_ms == 10
    assert config.pool.acquire_timeout_ms == 7


def test_load_config_layers_file_env_and_overrides(tmp_path):
    path = tmp_path / "stproc.json"
    path.write_text(json.dumps({"pool": {"max_connections": 4}, "retry": {"max_attempts": 1}}))

    config = load_config(
        file_path=str(path),
        overrides={"retry": {"max_attempts": 7}},
        environ={"STPROC_POOL__MAX_CONNECTIONS": "6", "STPROC_RETRY__MAX_ATTEMPTS": "2"},
    )

    assert config.pool.max_connections == 6
    assert config.retry.max_attempts == 7
