"""Configuration schema (pydantic) for the DingTalk connector."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field

from dingtalk_connector.settings import get_settings

DEFAULT_ACCOUNT_ID = "default"


class DingTalkAccountConfig(BaseModel):
    """Credentials and behaviour for one DingTalk robot application."""

    enabled: bool = True
    name: str = ""  # display name shown by status / probe
    client_id: str = ""  # App Key
    client_secret: str = ""  # App Secret
    system_prompt: str = ""  # extra agent instructions, passed with every turn
    dm_policy: Literal["open", "pairing", "allowlist"] = "open"
    allow_from: list[str] = Field(default_factory=list)
    group_policy: Literal["open", "allowlist"] = "open"
    group_allow_from: list[str] = Field(default_factory=list)
    # ms of inactivity before a session rotates
    session_timeout: int = Field(default_factory=lambda: get_settings().session_timeout_ms)
    text_chunk_limit: int = Field(default_factory=lambda: get_settings().text_chunk_limit)
    chunk_mode: Literal["length", "newline"] = "length"
    debug: bool = False  # log raw callbacks; gateway logs at DEBUG

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class DingTalkConfig(DingTalkAccountConfig):
    """Top-level ``channels.dingtalk`` block; doubles as the default account."""

    accounts: dict[str, DingTalkAccountConfig] = Field(default_factory=dict)


class ChannelsConfig(BaseModel):
    dingtalk: DingTalkConfig = Field(default_factory=DingTalkConfig)


class AgentDefaults(BaseModel):
    agent_id: str = "main"


class AgentsConfig(BaseModel):
    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


@dataclass(frozen=True, slots=True)
class ResolvedAccount:
    """An account id bound to its effective configuration."""

    account_id: str
    config: DingTalkAccountConfig
    enabled: bool
    configured: bool


class Config(BaseModel):
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)

    def list_dingtalk_account_ids(self) -> list[str]:
        dt = self.channels.dingtalk
        if dt.accounts:
            return list(dt.accounts)
        return [DEFAULT_ACCOUNT_ID] if dt.configured else []

    def resolve_dingtalk_account(self, account_id: str | None = None) -> ResolvedAccount:
        """Named account when present, otherwise the top-level block as ``default``."""
        dt = self.channels.dingtalk
        wanted = account_id or DEFAULT_ACCOUNT_ID
        named = dt.accounts.get(wanted)
        if named is not None:
            return ResolvedAccount(
                account_id=wanted,
                config=named,
                enabled=named.enabled,
                configured=named.configured,
            )
        base = DingTalkAccountConfig.model_validate(dt.model_dump(exclude={"accounts"}))
        return ResolvedAccount(
            account_id=DEFAULT_ACCOUNT_ID,
            config=base,
            enabled=base.enabled,
            configured=base.configured,
        )
