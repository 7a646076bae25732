"""DingTalk control endpoints – probe, status and proactive sends."""

from __future__ import annotations

from dataclasses import asdict
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from dingtalk_connector.channels.dingtalk.channel import probe_account
from dingtalk_connector.channels.dingtalk.send import DingTalkSender, parse_target
from dingtalk_connector.channels.dingtalk.types import (
    GroupTarget,
    MsgType,
    ProactiveTarget,
    SendOptions,
    SendResult,
)
from dingtalk_connector.channels.manager import ChannelManager
from dingtalk_connector.config.schema import Config, ResolvedAccount

router = APIRouter()

# Set by the gateway when channels run in the same process
_channel_manager: ChannelManager | None = None


def set_channel_manager(manager: ChannelManager | None) -> None:
    global _channel_manager
    _channel_manager = manager


# ── schemas ──────────────────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _SendBase(_CamelModel):
    content: str | None = None
    msg_type: MsgType | None = None
    title: str | None = None
    use_ai_card: bool = True
    fallback_to_normal: bool = True
    account_id: str | None = None

    def options(self) -> SendOptions:
        return SendOptions(
            msg_type=self.msg_type,
            title=self.title,
            use_ai_card=self.use_ai_card,
            fallback_to_normal=self.fallback_to_normal,
        )


class SendToUserRequest(_SendBase):
    user_id: str | None = None
    user_ids: list[str] | None = None


class SendToGroupRequest(_SendBase):
    open_conversation_id: str | None = None


class SendRequest(_SendBase):
    target: str | None = None  # user:<id> | group:<cid> | bare user id
    message: str | None = None  # alias for content


# ── deps ─────────────────────────────────────────────────────────────────


def get_config(request: Request) -> Config:
    return request.app.state.config


ConfigDep = Annotated[Config, Depends(get_config)]


def _configured_account(config: Config, account_id: str | None) -> ResolvedAccount:
    account = config.resolve_dingtalk_account(account_id)
    if not account.config.client_id:
        raise HTTPException(status_code=400, detail="DingTalk not configured")
    return account


def _sender(request: Request, account: ResolvedAccount) -> DingTalkSender:
    return DingTalkSender(account.config, request.app.state.client, request.app.state.tokens)


def _respond(result: SendResult) -> JSONResponse:
    return JSONResponse(status_code=200 if result.ok else 502, content=asdict(result))


# ── routes ───────────────────────────────────────────────────────────────


@router.get("/status")
async def status(config: ConfigDep, account_id: str | None = None) -> dict[str, Any]:
    account = config.resolve_dingtalk_account(account_id)
    body: dict[str, Any] = asdict(probe_account(account))
    body["account_id"] = account.account_id
    body["enabled"] = account.enabled
    if _channel_manager is not None:
        channel = _channel_manager.get_channel(account.account_id)
        if channel is not None:
            body["channel"] = channel.status.summary()
    return body


@router.get("/probe")
async def probe(config: ConfigDep, account_id: str | None = None) -> JSONResponse:
    result = probe_account(config.resolve_dingtalk_account(account_id))
    return JSONResponse(status_code=200 if result.ok else 503, content=asdict(result))


@router.post("/send-to-user")
async def send_to_user(body: SendToUserRequest, request: Request, config: ConfigDep) -> JSONResponse:
    account = _configured_account(config, body.account_id)
    user_ids = body.user_ids or ([body.user_id] if body.user_id else [])
    if not user_ids:
        raise HTTPException(status_code=400, detail="userId or userIds is required")
    if not body.content:
        raise HTTPException(status_code=400, detail="content is required")
    result = await _sender(request, account).send_to_user(user_ids, body.content, body.options())
    return _respond(result)


@router.post("/send-to-group")
async def send_to_group(body: SendToGroupRequest, request: Request, config: ConfigDep) -> JSONResponse:
    account = _configured_account(config, body.account_id)
    if not body.open_conversation_id:
        raise HTTPException(status_code=400, detail="openConversationId is required")
    if not body.content:
        raise HTTPException(status_code=400, detail="content is required")
    result = await _sender(request, account).send_to_group(
        body.open_conversation_id, body.content, body.options()
    )
    return _respond(result)


@router.post("/send")
async def send(body: SendRequest, request: Request, config: ConfigDep) -> JSONResponse:
    account = _configured_account(config, body.account_id)
    content = body.content or body.message
    if not body.target:
        raise HTTPException(
            status_code=400,
            detail="target is required (format: user:<userId> or group:<openConversationId>)",
        )
    if not content:
        raise HTTPException(status_code=400, detail="content is required")

    try:
        target = parse_target(body.target)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(target, GroupTarget):
        selector = ProactiveTarget(open_conversation_id=target.open_conversation_id)
    else:
        selector = ProactiveTarget(user_id=target.user_id)

    result = await _sender(request, account).send_proactive(selector, content, body.options())
    return _respond(result)
