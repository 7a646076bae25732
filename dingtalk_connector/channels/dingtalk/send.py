"""Outbound delivery: AI Card first, plain robot messages as the fallback.

Every public send returns a ``SendResult``.  Remote failures are folded into
``SendResult(ok=False, error=...)``; only programmer misuse (an empty target)
raises ``ValueError``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from loguru import logger

from dingtalk_connector.channels.dingtalk.api import DingTalkClient, DingTalkError
from dingtalk_connector.channels.dingtalk.auth import TokenCache
from dingtalk_connector.channels.dingtalk.card import AICardApi, CardLifecycle
from dingtalk_connector.channels.dingtalk.types import (
    CardTarget,
    GroupTarget,
    MsgType,
    ProactiveTarget,
    SendOptions,
    SendResult,
    UserTarget,
)
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.settings import get_settings
from dingtalk_connector.utils.text import looks_like_markdown, markdown_title

_TARGET_PREFIX_RE = re.compile(r"^(dingtalk|dd|ding):", re.IGNORECASE)
_ID_SHAPE_RE = re.compile(r"^(user:|group:)?[\w+/=-]+$")


# ── targets ──────────────────────────────────────────────────────────────


def normalize_target(raw: str) -> str | None:
    """Strip channel prefixes (``dingtalk:``, ``dd:``, ``ding:``); None when empty."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    return _TARGET_PREFIX_RE.sub("", trimmed).strip() or None


def looks_like_id(raw: str) -> bool:
    return bool(_ID_SHAPE_RE.match((raw or "").strip()))


def parse_target(raw: str) -> CardTarget:
    """``user:<id>`` / ``group:<id>`` / bare id (a user) → typed target."""
    normalized = normalize_target(raw)
    if not normalized:
        raise ValueError("target is required")
    if not looks_like_id(normalized):
        raise ValueError(f"Invalid DingTalk target: {raw}")
    if normalized.startswith("group:"):
        return GroupTarget(normalized[len("group:"):])
    if normalized.startswith("user:"):
        return UserTarget(normalized[len("user:"):])
    return UserTarget(normalized)


# ── payloads ─────────────────────────────────────────────────────────────


def build_msg_payload(
    msg_type: MsgType, content: str, title: str | None = None
) -> tuple[str, Any]:
    """Map a logical message kind to ``(msgKey, msgParam)``.

    Raises ValueError for malformed link / actionCard JSON.
    """
    if msg_type == "markdown":
        return "sampleMarkdown", {"title": title or "Message", "text": content}
    if msg_type in ("link", "actionCard"):
        try:
            param = json.loads(content)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid {msg_type} message format") from exc
        return ("sampleLink" if msg_type == "link" else "sampleActionCard"), param
    if msg_type == "image":
        return "sampleImageMsg", {"photoURL": content}
    return "sampleText", {"content": content}


def _result_from_response(data: dict[str, Any]) -> SendResult:
    key = data.get("processQueryKey")
    if key:
        return SendResult(ok=True, process_query_key=str(key))
    return SendResult(ok=False, error=str(data.get("message") or "Unknown error"))


# ── sender ───────────────────────────────────────────────────────────────


class DingTalkSender:
    """Outbound delivery engine bound to one robot account."""

    def __init__(
        self,
        config: DingTalkAccountConfig,
        client: DingTalkClient,
        tokens: TokenCache,
        card_api: AICardApi | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self._tokens = tokens
        self._card_api = card_api or AICardApi(client, tokens)

    def new_card(self) -> CardLifecycle:
        return CardLifecycle(self._card_api, self.config)

    # ── AI card ──

    async def _send_card(self, target: CardTarget, content: str) -> SendResult:
        """One-shot card: create, push the whole content, finish."""
        if not content.strip():
            return SendResult(ok=True)

        card = self.new_card()
        card.start_creation(target)
        await card.wait_for_creation()
        card_id = card.card_instance_id
        if card_id is None:
            return SendResult(ok=False, error="Failed to create AI Card")
        if not await card.finish(content):
            return SendResult(ok=False, error="Failed to push AI Card content")
        return SendResult(ok=True, used_ai_card=True, card_instance_id=card_id)

    # ── plain robot messages ──

    async def _send_normal_to_user(
        self, user_ids: list[str], content: str, options: SendOptions
    ) -> SendResult:
        try:
            msg_key, msg_param = build_msg_payload(options.msg_type or "text", content, options.title)
        except ValueError as exc:
            return SendResult(ok=False, error=str(exc))
        try:
            token = await self._tokens.get_access_token(self.config)
            data = await self._client.batch_send_to_users(token, {
                "robotCode": self.config.client_id,
                "userIds": user_ids,
                "msgKey": msg_key,
                "msgParam": json.dumps(msg_param, ensure_ascii=False),
            })
        except DingTalkError as exc:
            logger.warning(f"[DingTalk] batch send to {user_ids} failed: {exc}")
            return SendResult(ok=False, error=str(exc) or "Unknown error")
        return _result_from_response(data)

    async def _send_normal_to_group(
        self, open_conversation_id: str, content: str, options: SendOptions
    ) -> SendResult:
        try:
            msg_key, msg_param = build_msg_payload(options.msg_type or "text", content, options.title)
        except ValueError as exc:
            return SendResult(ok=False, error=str(exc))
        try:
            token = await self._tokens.get_access_token(self.config)
            data = await self._client.send_to_group(token, {
                "robotCode": self.config.client_id,
                "openConversationId": open_conversation_id,
                "msgKey": msg_key,
                "msgParam": json.dumps(msg_param, ensure_ascii=False),
            })
        except DingTalkError as exc:
            logger.warning(f"[DingTalk] group send to {open_conversation_id} failed: {exc}")
            return SendResult(ok=False, error=str(exc) or "Unknown error")
        return _result_from_response(data)

    # ── public API ──

    async def send_to_user(
        self,
        user_ids: str | Sequence[str],
        content: str,
        options: SendOptions | None = None,
    ) -> SendResult:
        opts = options or SendOptions()
        ids = [user_ids] if isinstance(user_ids, str) else [u for u in user_ids]
        if not ids or not all(ids):
            raise ValueError("at least one non-empty user id is required")

        # Cards are single-recipient; a batch always goes out as plain messages.
        if opts.use_ai_card and len(ids) == 1:
            card_result = await self._send_card(UserTarget(ids[0]), content)
            if card_result.ok or not opts.fallback_to_normal:
                return card_result
            logger.warning(f"[DingTalk] AI Card to user {ids[0]} failed, falling back: {card_result.error}")
        return await self._send_normal_to_user(ids, content, opts)

    async def send_to_group(
        self,
        open_conversation_id: str,
        content: str,
        options: SendOptions | None = None,
    ) -> SendResult:
        opts = options or SendOptions()
        if not open_conversation_id:
            raise ValueError("open_conversation_id is required")

        if opts.use_ai_card:
            card_result = await self._send_card(GroupTarget(open_conversation_id), content)
            if card_result.ok or not opts.fallback_to_normal:
                return card_result
            logger.warning(
                f"[DingTalk] AI Card to group {open_conversation_id} failed, falling back: {card_result.error}"
            )
        return await self._send_normal_to_group(open_conversation_id, content, opts)

    async def send_proactive(
        self,
        target: ProactiveTarget,
        content: str,
        options: SendOptions | None = None,
    ) -> SendResult:
        opts = options or SendOptions()
        if opts.msg_type is None and looks_like_markdown(content, get_settings().markdown_signal_pattern):
            opts = replace(opts, msg_type="markdown")

        if target.user_ids:
            return await self.send_to_user(list(target.user_ids), content, opts)
        if target.user_id:
            return await self.send_to_user(target.user_id, content, opts)
        if target.open_conversation_id:
            return await self.send_to_group(target.open_conversation_id, content, opts)
        return SendResult(ok=False, error="Must specify userId, userIds, or openConversationId")

    async def send_to_target(
        self, target: CardTarget, content: str, options: SendOptions | None = None
    ) -> SendResult:
        if isinstance(target, GroupTarget):
            return await self.send_to_group(target.open_conversation_id, content, options)
        return await self.send_to_user(target.user_id, content, options)

    # ── session webhook (reply within a live conversation) ──

    async def send_text_message(
        self, session_webhook: str, text: str, at_user_id: str | None = None
    ) -> dict[str, Any]:
        token = await self._tokens.get_access_token(self.config)
        body: dict[str, Any] = {"msgtype": "text", "text": {"content": text}}
        if at_user_id:
            body["at"] = {"atUserIds": [at_user_id], "isAtAll": False}
        return await self._client.post_session_webhook(session_webhook, token, body)

    async def send_markdown_message(
        self,
        session_webhook: str,
        title: str,
        markdown: str,
        at_user_id: str | None = None,
    ) -> dict[str, Any]:
        token = await self._tokens.get_access_token(self.config)
        text = f"{markdown} @{at_user_id}" if at_user_id else markdown
        body: dict[str, Any] = {
            "msgtype": "markdown",
            "markdown": {"title": title or "Message", "text": text},
        }
        if at_user_id:
            body["at"] = {"atUserIds": [at_user_id], "isAtAll": False}
        return await self._client.post_session_webhook(session_webhook, token, body)

    async def send_message(
        self,
        session_webhook: str,
        text: str,
        *,
        use_markdown: bool | None = None,
        title: str | None = None,
        at_user_id: str | None = None,
    ) -> dict[str, Any]:
        """Reply through the session webhook, picking markdown vs. text.

        ``use_markdown=None`` sniffs the content; ``False`` forces plain text.
        """
        if use_markdown is None:
            use_markdown = looks_like_markdown(text, get_settings().markdown_signal_pattern)
        if use_markdown:
            return await self.send_markdown_message(
                session_webhook, title or markdown_title(text), text, at_user_id
            )
        return await self.send_text_message(session_webhook, text, at_user_id)
