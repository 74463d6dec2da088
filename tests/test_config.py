"""Tests for YAML configuration loading and validation."""

import os

import pytest

from config import ServiceConfig, config_from_dict, load_config
from exceptions import ConfigurationError

EXAMPLE_CONFIG = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.example.yaml")

ENV_OVERRIDES = (
    "WEBFORM_SYNC_CONFIG",
    "WEBFORM_SYNC_HOST",
    "WEBFORM_SYNC_PORT",
    "WEBFORM_SYNC_DATA_DIR",
    "WEBFORM_SYNC_API_TOKEN",
    "LOG_LEVEL",
    "JSON_LOGGING",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


# ==================== Loading Tests ====================


def test_defaults_when_default_file_missing(tmp_path, monkeypatch):
    """Test a missing config.yaml in the working directory means built-in defaults."""
    monkeypatch.chdir(tmp_path)

    cfg = load_config()

    assert cfg.server.port == 8765
    assert cfg.server.fallback_ports == [8766, 8767, 8768]
    assert cfg.access_control.mode == "allow_all"
    assert cfg.storage.db_path == os.path.join("./data", "presets.db")
    assert cfg.logging.level == "INFO"


def test_missing_explicit_file_is_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(str(tmp_path / "nope.yaml"))


def test_missing_file_from_env_is_error(tmp_path, monkeypatch):
    monkeypatch.setenv("WEBFORM_SYNC_CONFIG", str(tmp_path / "nope.yaml"))

    with pytest.raises(ConfigurationError):
        load_config()


def test_example_config_loads():
    """Test the shipped example configuration is valid."""
    cfg = load_config(EXAMPLE_CONFIG)

    assert cfg.access_control.mode == "whitelist"
    assert "::1" in cfg.access_control.whitelist
    assert cfg.url_filter.whitelist_overrides is True
    assert cfg.storage.backup_path == "./data/backups"


def test_sections_are_parsed(tmp_path):
    path = write_config(tmp_path, """
server:
  host: 0.0.0.0
  port: 9000
  fallback_ports: []
access_control:
  mode: blacklist
  blacklist: [10.0.0.0/8]
storage:
  data_dir: /var/lib/webform-sync
  backup:
    enabled: true
    max_backups: 7
logging:
  level: warn
  output: both
""")

    cfg = load_config(path)

    assert cfg.server.host == "0.0.0.0"
    assert cfg.server.port == 9000
    assert cfg.server.fallback_ports == []
    assert cfg.access_control.blacklist == ["10.0.0.0/8"]
    assert cfg.storage.backup.enabled is True
    assert cfg.storage.backup.max_backups == 7
    assert cfg.storage.backup.interval_hours == 24
    assert cfg.storage.backup_path == os.path.join("/var/lib/webform-sync", "backups")
    assert cfg.logging.level == "WARNING"
    assert cfg.logging.output == "both"


def test_empty_file_means_defaults(tmp_path):
    cfg = load_config(write_config(tmp_path, ""))

    assert cfg == config_from_dict({})


def test_invalid_yaml(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, "server: [unclosed\n"))


def test_non_mapping_document(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, "- just\n- a list\n"))


# ==================== Validation Tests ====================


@pytest.mark.parametrize(
    "data",
    [
        {"server": {"bogus": 1}},
        {"nonsense": {}},
        {"server": "not a mapping"},
        {"server": {"port": 70000}},
        {"server": {"read_timeout": 0}},
        {"access_control": {"mode": "sometimes"}},
        {"url_filter": {"enabled": True}},
        {"storage": {"lock_timeout": 0.1}},
        {"storage": {"backup": {"max_backups": 0}}},
        {"logging": {"level": "chatty"}},
        {"logging": {"output": "syslog"}},
        {"authentication": {"enabled": True, "type": "token"}},
        {"authentication": {"enabled": True, "type": "basic", "username": "admin"}},
        {"authentication": {"enabled": True, "type": "oauth"}},
        {"performance": {"max_concurrent_requests": 0}},
        {"performance": {"max_body_bytes": 10}},
        {"maintenance": {"auto_cleanup": True, "delete_after_days": 0}},
    ],
)
def test_invalid_configuration(data):
    with pytest.raises(ConfigurationError):
        config_from_dict(data)


def test_disabled_auth_needs_no_credentials():
    cfg = config_from_dict({"authentication": {"enabled": False, "type": "token"}})

    assert cfg.authentication.enabled is False


def test_memory_database_path():
    cfg = config_from_dict({"storage": {"db_file": ":memory:"}})

    assert cfg.storage.db_path == ":memory:"


def test_defaults_are_not_shared():
    first = ServiceConfig()
    second = ServiceConfig()

    first.access_control.whitelist.append("10.0.0.1")

    assert second.access_control.whitelist == ["127.0.0.1", "::1"]


# ==================== Environment Override Tests ====================


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("WEBFORM_SYNC_HOST", "0.0.0.0")
    monkeypatch.setenv("WEBFORM_SYNC_PORT", "9999")
    monkeypatch.setenv("WEBFORM_SYNC_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("JSON_LOGGING", "true")

    cfg = load_config(write_config(tmp_path, "server:\n  port: 8000\n"))

    assert cfg.server.host == "0.0.0.0"
    assert cfg.server.port == 9999
    assert cfg.storage.data_dir == str(tmp_path)
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.json is True


def test_env_token_satisfies_token_auth(tmp_path, monkeypatch):
    monkeypatch.setenv("WEBFORM_SYNC_API_TOKEN", "from-env")

    cfg = load_config(write_config(tmp_path, "authentication:\n  enabled: true\n  type: token\n"))

    assert cfg.authentication.api_token == "from-env"


def test_env_port_must_be_integer(tmp_path, monkeypatch):
    monkeypatch.setenv("WEBFORM_SYNC_PORT", "eighty")

    with pytest.raises(ConfigurationError):
        load_config(write_config(tmp_path, ""))
