"""Configuration module."""

from taskbeat.core.config.loader import load_config
from taskbeat.core.config.schema import Config

__all__ = ["Config", "load_config"]
