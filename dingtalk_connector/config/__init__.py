"""Configuration module for dingtalk_connector."""

from dingtalk_connector.config.loader import load_config, get_config_path
from dingtalk_connector.config.schema import Config, DingTalkAccountConfig, ResolvedAccount

__all__ = ["Config", "DingTalkAccountConfig", "ResolvedAccount", "load_config", "get_config_path"]
