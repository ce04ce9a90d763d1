"""Config Loader - Loads proxy configuration from YAML.

String values may reference environment variables as ${ENV_VAR}; they are
substituted before validation so secrets (e.g. auth headers) stay out of
config files.

Example file:

    base_url: http://localhost:8080/httprpc-test/
    connect_timeout: 0.5
    read_timeout: 4
    headers:
      Authorization: Bearer ${SERVICE_TOKEN}
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from wsproxy.errors import ConfigurationError
from wsproxy.models import ProxyConfig

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


class ConfigError(ConfigurationError):
    """Raised when configuration loading fails."""


def load_proxy_config(config_path: Path) -> ProxyConfig:
    """Load proxy configuration from YAML with ${ENV_VAR} substitution."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return ProxyConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def _substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} patterns in strings within data."""
    if isinstance(data, str):
        return _substitute_string(data)
    elif isinstance(data, dict):
        return {k: _substitute_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    return data


def _substitute_string(s: str) -> str:
    """Substitute ${ENV_VAR} patterns. Raises ConfigError if env var is not set."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(f"Environment variable '{var_name}' is not set")
        return value

    return _ENV_VAR_PATTERN.sub(replacer, s)
