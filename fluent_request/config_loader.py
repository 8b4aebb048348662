"""Config Loader - Loads client configuration and turns it into httpx kwargs.

Handles loading YAML config files with environment variable substitution
and translating ClientConfig TLS settings into an SSL context.

See DESIGN.md "Client Configuration".
"""

from __future__ import annotations

import os
import re
import ssl
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from fluent_request.errors import InvalidConfigurationError
from fluent_request.models import ClientConfig


class ConfigError(InvalidConfigurationError):
    """Raised when configuration loading fails."""


_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_client_config(config_path: Path) -> ClientConfig:
    """Load client configuration from YAML with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    raw_config = _substitute_env_vars(raw_config)

    try:
        return ClientConfig.model_validate(raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def build_client_kwargs(config: ClientConfig) -> dict[str, Any]:
    """Build kwargs for httpx.Client / httpx.AsyncClient from a ClientConfig.

    Any TLS customization (CA bundle, client certificate, ciphers) is
    expressed as one ssl.SSLContext passed through ``verify``.

    Raises:
        ConfigError: If the cipher string or certificate files are invalid.
    """
    kwargs: dict[str, Any] = {
        "headers": config.headers,
        "timeout": config.timeout,
        "follow_redirects": config.follow_redirects,
    }
    if config.base_url:
        kwargs["base_url"] = config.base_url

    if config.ca_bundle or config.cert or config.ciphers:
        kwargs["verify"] = _build_ssl_context(config)
    elif not config.verify_ssl:
        kwargs["verify"] = False
    # else: use httpx default (True)

    return kwargs


def _build_ssl_context(config: ClientConfig) -> ssl.SSLContext:
    try:
        ssl_context = ssl.create_default_context(cafile=config.ca_bundle)
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(f"Cannot load CA bundle '{config.ca_bundle}': {e}") from e

    if config.ciphers:
        try:
            ssl_context.set_ciphers(config.ciphers)
        except ssl.SSLError as e:
            raise ConfigError(f"Invalid cipher string '{config.ciphers}': {e}") from e

    if not config.verify_ssl:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

    if config.cert and config.key:
        try:
            ssl_context.load_cert_chain(config.cert, config.key, config.key_password)
        except (OSError, ssl.SSLError) as e:
            raise ConfigError(f"Cannot load client certificate '{config.cert}': {e}") from e

    return ssl_context


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
