"""Configuration loading utilities."""

import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from loguru import logger

from dingtalk_connector.config.schema import Config

# Load .env into os.environ (won't overwrite existing env vars)
load_dotenv(override=False)


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".dingtalk-connector" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, then apply env-var overrides.

    Priority (highest → lowest):
        1. DINGTALK_* environment variables / .env
        2. ~/.dingtalk-connector/config.json
        3. Built-in defaults
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
            config = Config.model_validate(convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}; using defaults")
            config = Config()
    else:
        config = Config()

    _apply_env_overrides(config)
    return config


# ---------------------------------------------------------------------------
# Flat env-var overrides (DINGTALK_*), applied to the default account
# ---------------------------------------------------------------------------


def _split_csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _apply_env_overrides(config: Config) -> None:
    """Apply flat DINGTALK_* env vars on top of the default account."""
    dt = config.channels.dingtalk

    if val := os.environ.get("DINGTALK_CLIENT_ID"):
        dt.client_id = val
        dt.enabled = True
    if val := os.environ.get("DINGTALK_CLIENT_SECRET"):
        dt.client_secret = val
    if val := os.environ.get("DINGTALK_ALLOW_FROM"):
        dt.allow_from = _split_csv(val)
    if val := os.environ.get("DINGTALK_GROUP_ALLOW_FROM"):
        dt.group_allow_from = _split_csv(val)
    if val := os.environ.get("DINGTALK_DM_POLICY"):
        dt.dm_policy = val  # type: ignore[assignment]
    if val := os.environ.get("DINGTALK_GROUP_POLICY"):
        dt.group_policy = val  # type: ignore[assignment]
    if val := os.environ.get("DINGTALK_SESSION_TIMEOUT"):
        dt.session_timeout = int(val)
    if os.environ.get("DINGTALK_DEBUG", "").lower() in ("1", "true", "yes"):
        dt.debug = True

    if val := os.environ.get("DINGTALK_AGENT_ID"):
        config.agents.defaults.agent_id = val


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file in camelCase format."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump())

    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
