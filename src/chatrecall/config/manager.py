"""
Configuration Manager - Settings for the store, retrieval and keyword extraction.

Handles YAML/JSON configuration files with environment overrides.
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from loguru import logger


class ConfigManager:
    """
    Configuration manager for ChatRecall.

    Features:
    - YAML/JSON configuration files, deep-merged over defaults
    - Dot-notation get/set with change watchers
    - Environment variable overrides
    """

    DEFAULT_CONFIG = {
        "app": {
            "name": "ChatRecall",
            "version": "0.1.0",
            "debug": False,
        },
        "logging": {
            "level": "INFO",
            "file": "data/logs/chatrecall.log",
        },
        "store": {
            "db_path": "data/chatrecall.db",
            "keyword_matching": "auto",
        },
        "context": {
            "max_messages": 100,
            "analysis_window_size": 10,
            "max_context_age_hours": 24,
        },
        "retrieval": {
            "overfetch_factor": 4,
            "similarity_threshold": 0.3,
        },
        "keywords": {
            "enabled": False,
            "provider": "openai",
            "model": "gpt-4o-mini",
            "temperature": 0.2,
            "max_tokens": 512,
            "primary_language": "zh",
            "secondary_language": "en",
        },
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to configuration file
        """
        self._config_path = Path(config_path) if config_path else Path("config.yaml")
        self._config: Dict[str, Any] = self._deep_copy(self.DEFAULT_CONFIG)
        self._watchers: List[Callable[[str, Any], None]] = []
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._config_path

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        """Load configuration from file."""
        self._config = self._deep_copy(self.DEFAULT_CONFIG)

        if self._config_path.exists():
            try:
                content = self._config_path.read_text(encoding="utf-8")

                if self._config_path.suffix in [".yaml", ".yml"]:
                    file_config = yaml.safe_load(content) or {}
                else:
                    file_config = json.loads(content)

                if not isinstance(file_config, dict):
                    raise ValueError("top-level configuration must be a mapping")

                self._deep_merge(self._config, file_config)
                logger.info(f"Configuration loaded from {self._config_path}")

            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        else:
            await self.save()
            logger.info("Created default configuration file")

        self._apply_env_overrides()

        self._loaded = True

    async def save(self) -> None:
        """Save configuration to file."""
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)

            if self._config_path.suffix in [".yaml", ".yml"]:
                content = yaml.safe_dump(self._config, default_flow_style=False, sort_keys=False)
            else:
                content = json.dumps(self._config, indent=2)

            self._config_path.write_text(content, encoding="utf-8")
            logger.debug(f"Configuration saved to {self._config_path}")

        except OSError as e:
            logger.error(f"Failed to save config: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "store.db_path")
            default: Default value if not found

        Returns:
            Configuration value
        """
        value: Any = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by dot-notation key and notify watchers."""
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            if not isinstance(config.get(part), dict):
                config[part] = {}
            config = config[part]

        config[parts[-1]] = value

        for watcher in self._watchers:
            try:
                watcher(key, value)
            except Exception as e:
                logger.warning(f"Config watcher error: {e}")

    def watch(self, callback: Callable[[str, Any], None]) -> None:
        """Register a configuration change watcher."""
        self._watchers.append(callback)

    def unwatch(self, callback: Callable[[str, Any], None]) -> None:
        if callback in self._watchers:
            self._watchers.remove(callback)

    def _apply_env_overrides(self) -> None:
        env_mappings = {
            "CHATRECALL_DB_PATH": ("store.db_path", str),
            "CHATRECALL_LOG_LEVEL": ("logging.level", lambda x: x.upper()),
            "CHATRECALL_KEYWORDS_MODEL": ("keywords.model", str),
            # An API key is enough to turn keyword extraction on.
            "OPENAI_API_KEY": ("keywords.enabled", lambda x: True),
        }

        for env_var, (config_key, converter) in env_mappings.items():
            value = os.getenv(env_var)
            if value:
                self.set(config_key, converter(value))
                logger.debug(f"Applied env override: {env_var}")

    def _deep_merge(self, base: dict, override: dict) -> None:
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _deep_copy(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        return obj

    @property
    def all(self) -> Dict[str, Any]:
        """Get all configuration."""
        return self._deep_copy(self._config)
