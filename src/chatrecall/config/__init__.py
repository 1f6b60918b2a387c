"""Configuration module."""

from chatrecall.config.manager import ConfigManager

__all__ = ["ConfigManager"]
