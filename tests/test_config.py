"""Tests for environment and YAML configuration."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from chatbridge.engine.config import BridgeConfig
from chatbridge.engine.yaml_config import load_yaml_config


def test_defaults():
    config = BridgeConfig()
    assert config.command == "claude"
    assert config.max_sessions == 2
    assert config.message_history_limit == 100
    assert config.debounce_seconds == 0.2
    assert config.cache_size == 10
    assert config.truncate_lines == 10
    assert config.log_root.endswith(str(Path(".claude") / "projects"))


def test_from_env_overrides():
    env = {
        "CHATBRIDGE_COMMAND": "/opt/claude",
        "CHATBRIDGE_MAX_SESSIONS": "4",
        "CHATBRIDGE_SKIP_PERMISSIONS": "yes",
        "CHATBRIDGE_MONITOR_LOGS": "false",
        "CHATBRIDGE_EXTRA_ARGS": "--model sonnet",
        "CHATBRIDGE_DEBOUNCE": "0.5",
    }
    with patch.dict("os.environ", env, clear=True):
        config = BridgeConfig.from_env()
    assert config.command == "/opt/claude"
    assert config.max_sessions == 4
    assert config.skip_permissions is True
    assert config.monitor_logs is False
    assert config.extra_args == ["--model", "sonnet"]
    assert config.debounce_seconds == 0.5


def test_from_env_without_vars_uses_defaults():
    with patch.dict("os.environ", {}, clear=True):
        config = BridgeConfig.from_env()
    assert config == BridgeConfig(log_root=config.log_root)


def test_yaml_layers_over_base(tmp_path):
    path = tmp_path / "chatbridge.yaml"
    path.write_text(yaml.safe_dump({
        "bridge": {"max_sessions": 3, "extra_args": "--model opus", "cwd": "~/work"},
        "monitor": {"enabled": False, "cache_size": 4},
        "logging": {"level": "DEBUG", "file": "/tmp/cb.log"},
    }), encoding="utf-8")

    config = load_yaml_config(path, base=BridgeConfig(command="custom"))
    assert config.command == "custom"
    assert config.max_sessions == 3
    assert config.extra_args == ["--model", "opus"]
    assert config.cwd == str(Path("~/work").expanduser())
    assert config.monitor_logs is False
    assert config.cache_size == 4
    assert config.log_level == "DEBUG"
    assert config.log_file == "/tmp/cb.log"


def test_yaml_unknown_keys_ignored(tmp_path, caplog):
    path = tmp_path / "c.yaml"
    path.write_text("bridge:\n  bogus: 1\nmonitor: nope\n", encoding="utf-8")
    config = load_yaml_config(path, base=BridgeConfig())
    assert config == BridgeConfig(log_root=config.log_root)
    assert "bogus" in caplog.text


def test_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml", base=BridgeConfig())


def test_yaml_must_be_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(path, base=BridgeConfig())
