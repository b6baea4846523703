"""Configuration loading for rapidblock.

All user-editable settings (target servers, logging) live in a single JSON
or YAML file. Client tokens may be kept out of that file and supplied via
environment variables instead, optionally from a .env file.
"""

from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv

from rapidblock.adapters.blockfile import load_mapping
from rapidblock.core.config import ApplyMode, ServerConfig

# Default config path; overridable with RAPIDBLOCK_CONFIG or --config-file.
CONFIG_PATH = os.getenv("RAPIDBLOCK_CONFIG", "config.json")


def load_config(path: Optional[str] = None) -> dict:
    """Load the config file with a flat, user-friendly schema."""

    return load_mapping(path or CONFIG_PATH)


def _resolve_token(entry: dict[str, Any]) -> str:
    token = entry.get("clientToken")
    if token:
        return str(token)
    # Tokens referenced by name are read from the environment (.env included).
    env_name = entry.get("clientTokenEnv")
    if env_name:
        load_dotenv()
        value = os.getenv(str(env_name))
        if not value:
            raise ValueError(f"environment variable {env_name} is not set")
        return value
    return ""


def build_servers(config: dict[str, Any]) -> list[ServerConfig]:
    """Normalize the ``servers`` list into ServerConfig entries."""

    servers: list[ServerConfig] = []
    for index, entry in enumerate(config.get("servers") or []):
        if not isinstance(entry, dict):
            raise ValueError(f"servers[{index}] must be a mapping")
        mode = ApplyMode.parse(entry.get("mode"))
        name = str(entry.get("name") or "")
        uri = str(entry.get("uri") or "")
        if mode is not ApplyMode.NOOP:
            if not name:
                raise ValueError(f"servers[{index}]: name is required")
            if not uri:
                raise ValueError(f"servers[{index}] ({name}): uri is required for mode {mode.value}")
        token = _resolve_token(entry)
        if mode is ApplyMode.MASTODON_4X_REST and not token:
            raise ValueError(f"servers[{index}] ({name}): clientToken or clientTokenEnv is required for mode {mode.value}")
        servers.append(
            ServerConfig(
                name=name or f"server-{index}",
                mode=mode,
                uri=uri,
                client_token=token,
            )
        )
    return servers


def logging_config(config: dict[str, Any]) -> dict[str, Any]:
    """Logging configuration (optional)."""

    return config.get("logging") or {}
