"""YAML configuration loader.

Settings from the file are layered over the environment defaults of
``BridgeConfig.from_env()``.

Example YAML:
    bridge:
      command: claude
      cwd: /path/to/project
      max_sessions: 2
      skip_permissions: false
      extra_args: [--model, sonnet]

    monitor:
      enabled: true
      log_root: ~/.claude/projects
      debounce_seconds: 0.2
      cache_size: 10

    logging:
      level: DEBUG
      file: ~/.chatbridge/logs/chatbridge.log
      raw_file: ~/.chatbridge/logs/raw.jsonl
"""
from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import BridgeConfig

logger = logging.getLogger(__name__)

# Keys of the ``monitor`` section that map to a differently named field.
_MONITOR_ALIASES = {"enabled": "monitor_logs"}
_LOGGING_ALIASES = {
    "level": "log_level",
    "file": "log_file",
    "raw_file": "raw_log_file",
}
_PATH_FIELDS = {"cwd", "log_root", "log_file", "raw_log_file"}


def _apply_section(
    overrides: dict[str, Any],
    section_name: str,
    section: Any,
    aliases: dict[str, str],
    known: set[str],
) -> None:
    if section is None:
        return
    if not isinstance(section, dict):
        logger.warning(
            "load_yaml_config: section '%s' is not a mapping, ignored",
            section_name,
        )
        return
    for key, value in section.items():
        name = aliases.get(key, key)
        if name not in known:
            logger.warning(
                "load_yaml_config: unknown key '%s.%s' ignored",
                section_name, key,
            )
            continue
        if name in _PATH_FIELDS and isinstance(value, str):
            value = os.path.expanduser(value)
        overrides[name] = value


def load_yaml_config(
    path: str | Path,
    base: BridgeConfig | None = None,
) -> BridgeConfig:
    """Load a YAML config file into a BridgeConfig."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s", path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base if base is not None else BridgeConfig.from_env()
    known = {f.name for f in fields(BridgeConfig)}
    overrides: dict[str, Any] = {}
    _apply_section(overrides, "bridge", raw.get("bridge"), {}, known)
    _apply_section(
        overrides, "monitor", raw.get("monitor"), _MONITOR_ALIASES, known
    )
    _apply_section(
        overrides, "logging", raw.get("logging"), _LOGGING_ALIASES, known
    )

    for name, value in overrides.items():
        setattr(config, name, value)
    if isinstance(config.extra_args, str):
        config.extra_args = config.extra_args.split()

    logger.info(
        "load_yaml_config: applied %d override(s) from %s",
        len(overrides), path.name,
    )
    return config
