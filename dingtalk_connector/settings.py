"""Centralised process settings for the connector, loaded from env / .env."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConnectorSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DINGTALK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- general ---
    app_name: str = "dingtalk-connector"
    log_level: str = "INFO"

    # --- HTTP surface ---
    host: str = "0.0.0.0"
    port: int = 8080

    # --- DingTalk endpoints ---
    api_base_url: str = "https://api.dingtalk.com"
    http_timeout_seconds: float = 10.0
    ai_card_template_id: str = "382e4302-551d-4880-bf29-a30acfab2e71.schema"

    # --- dedup / session ---
    dedup_ttl_seconds: int = 300
    dedup_sweep_threshold: int = 100
    session_timeout_ms: int = 1_800_000

    # --- outbound formatting ---
    # Text matching this pattern (or containing a line break) is sent as markdown.
    markdown_signal_pattern: str = r"^[#*>-]|[*_`#\[\]]"
    text_chunk_limit: int = 4000


@lru_cache
def get_settings() -> ConnectorSettings:
    return ConnectorSettings()
