"""Configuration loader — YAML file + env override."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from taskbeat.core.config.schema import Config

# Looked up in cwd, first match wins
DEFAULT_CONFIG_FILES = ("taskbeat.yaml", "config.yaml")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load configuration.

    Resolution order for config file:
        1. Explicit ``config_path`` argument
        2. ``TASKBEAT_CONFIG`` env variable
        3. ``./taskbeat.yaml`` then ``./config.yaml`` in cwd

    Values priority (handled by pydantic-settings):
        env vars  >  .env file  >  YAML  >  defaults
    """
    path = _resolve_path(config_path)
    data = _load_yaml(path)
    if path and data:
        logger.debug(f"Config loaded from {path}")
    return Config(**data)


def _resolve_path(config_path: str | Path | None = None) -> Path | None:
    if config_path:
        return Path(config_path)

    env = os.environ.get("TASKBEAT_CONFIG")
    if env:
        return Path(env)

    for name in DEFAULT_CONFIG_FILES:
        candidate = Path(name)
        if candidate.exists():
            return candidate
    return None


def _load_yaml(path: Path | None) -> dict[str, Any]:
    """Load YAML mapping; missing file means no overrides."""
    if not path or not path.exists():
        return {}
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")
    return data
