"""Configuration management for upnpigd.

Provides centralized configuration with TOML support and hierarchical
loading from defaults -> config file -> environment.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import toml
from pydantic import ValidationError

from upnpigd.exceptions import ConfigurationError
from upnpigd.logging_config import setup_logging
from upnpigd.models import Config

CONFIG_FILENAME = "upnpigd.toml"

# Environment variable -> dotted config path
ENV_MAPPINGS: dict[str, str] = {
    "UPNPIGD_TIMEOUT_MS": "discovery.timeout_ms",
    "UPNPIGD_SEARCH_TARGET": "discovery.search_target",
    "UPNPIGD_SEARCH_ALL_FALLBACK": "discovery.search_all_fallback",
    "UPNPIGD_SOURCE_ADDRESS": "discovery.source_address",
    "UPNPIGD_REUSE_INCOMING_PORT": "discovery.reuse_incoming_port",
    "UPNPIGD_MAX_RESPONSES": "discovery.max_responses",
    "UPNPIGD_AUTODISCOVER": "discovery.autodiscover",
    "UPNPIGD_HTTP_TIMEOUT": "control.http_timeout",
    "UPNPIGD_DEFAULT_DESCRIPTION": "control.default_description",
    "UPNPIGD_LOG_LEVEL": "observability.log_level",
    "UPNPIGD_LOG_FILE": "observability.log_file",
    "UPNPIGD_STRUCTURED_LOGGING": "observability.structured_logging",
    "UPNPIGD_LOG_CORRELATION_ID": "observability.log_correlation_id",
}

# Values that must stay strings even when they look numeric or boolean
_STRING_PATHS = frozenset(
    {
        "discovery.search_target",
        "discovery.source_address",
        "control.default_description",
        "observability.log_level",
        "observability.log_file",
    }
)

_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
    if path in _STRING_PATHS:
        return raw
    low = raw.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads and validates configuration."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for upnpigd.toml

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._setup_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".config" / "upnpigd" / CONFIG_FILENAME,
            Path.home() / f".{CONFIG_FILENAME}",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            if not self.config_file.exists():
                msg = f"Config file not found: {self.config_file}"
                raise ConfigurationError(msg)
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except ValidationError as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string.

        Args:
            fmt: one of "toml" or "json"

        """
        # toml cannot represent None, so unset options are left out
        data = self.config.model_dump(mode="json", exclude_none=True)
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        msg = f"Unsupported export format: {fmt}"
        raise ConfigurationError(msg)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None)
    _config_manager.config = new_config
    _config_manager._setup_logging()  # noqa: SLF001
