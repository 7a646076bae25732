"""Inbound turn handling: one robot callback → one agent turn."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from dingtalk_connector.agent.runtime import AgentRuntime, Peer
from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.channels.dingtalk.reply import ReplyDispatcher
from dingtalk_connector.channels.dingtalk.send import DingTalkSender, normalize_target
from dingtalk_connector.channels.dingtalk.types import CardTarget, GroupTarget, UserTarget
from dingtalk_connector.config.schema import ResolvedAccount
from dingtalk_connector.session.manager import SessionManager, is_new_session_command

CHANNEL_ID = "dingtalk"
_PREVIEW_LIMIT = 160


@dataclass(frozen=True, slots=True)
class MessageContent:
    text: str
    message_type: str


def extract_message_content(data: dict[str, Any]) -> MessageContent:
    """Plain text for the agent plus the DingTalk ``msgtype``."""
    msgtype = data.get("msgtype") or "text"
    content = data.get("content") or {}
    text_block = data.get("text") or {}

    if msgtype == "text":
        return MessageContent((text_block.get("content") or "").strip(), "text")
    if msgtype == "richText":
        parts = content.get("richText") or []
        text = "".join(p.get("text", "") for p in parts if p.get("type") == "text")
        return MessageContent(text or "[richText]", "richText")
    if msgtype == "picture":
        return MessageContent("[picture]", "picture")
    if msgtype == "audio":
        return MessageContent(content.get("recognition") or "[audio]", "audio")
    if msgtype == "video":
        return MessageContent("[video]", "video")
    if msgtype == "file":
        return MessageContent(f"[file: {content.get('fileName') or 'file'}]", "file")
    return MessageContent((text_block.get("content") or "").strip() or f"[{msgtype}]", msgtype)


def _allowed(entries: list[str], *candidates: str) -> bool:
    normalized = {normalize_target(e) for e in entries}
    if "*" in normalized:
        return True
    return any(c and c in normalized for c in candidates)


def format_envelope(channel: str, sender: str, body: str, when: datetime | None = None) -> str:
    stamp = (when or datetime.now()).strftime("%Y-%m-%d %H:%M")
    return f"[{channel} {sender} {stamp}] {body}"


class InboundHandler:
    """
    Turns a decoded robot callback into an agent turn.

    Order of operations: extract text → access policy → reset command →
    session resolution → route → envelope → system event → dispatch.
    Dedup happens before this handler, in the channel.
    """

    def __init__(
        self,
        account: ResolvedAccount,
        sender: DingTalkSender,
        runtime: AgentRuntime,
        sessions: SessionManager,
    ) -> None:
        self.account = account
        self.sender = sender
        self.runtime = runtime
        self.sessions = sessions

    def is_allowed(self, is_direct: bool, sender_id: str, conversation_id: str) -> bool:
        cfg = self.account.config
        if is_direct:
            # "pairing" approval lives in the host; here it behaves like "open".
            return cfg.dm_policy != "allowlist" or _allowed(cfg.allow_from, sender_id)
        return cfg.group_policy != "allowlist" or _allowed(
            cfg.group_allow_from, sender_id, conversation_id
        )

    async def handle(self, data: dict[str, Any]) -> InboundMessage | None:
        """Process one callback payload.  Returns the dispatched turn, or None."""
        account_id = self.account.account_id
        cfg = self.account.config

        content = extract_message_content(data)
        if not content.text:
            return None

        is_direct = str(data.get("conversationType", "")) == "1"
        sender_id = data.get("senderStaffId") or data.get("senderId") or ""
        sender_nick = data.get("senderNick") or sender_id
        conversation_id = data.get("conversationId") or ""
        if not sender_id:
            logger.warning(f"dingtalk[{account_id}]: callback without sender id, dropped")
            return None
        if not is_direct and not conversation_id:
            logger.warning(f"dingtalk[{account_id}]: group callback without conversationId, dropped")
            return None

        log = logger.bind(account_id=account_id, sender_id=sender_id)
        log.info(f"[DingTalk] incoming: {content.text}")
        if cfg.debug:
            log.info(f"[DingTalk] raw callback: {data}")

        if not self.is_allowed(is_direct, sender_id, conversation_id):
            where = "DM" if is_direct else f"group {conversation_id}"
            log.info(f"dingtalk[{account_id}]: {sender_id} not in allowlist for {where}, ignored")
            return None

        # ── session ──
        if is_new_session_command(content.text):
            self.sessions.resolve(sender_id, True, cfg.session_timeout)
            return None
        session = self.sessions.resolve(sender_id, False, cfg.session_timeout)

        # ── route ──
        peer = Peer("direct", sender_id) if is_direct else Peer("group", conversation_id)
        route = self.runtime.resolve_route(CHANNEL_ID, account_id, peer)
        log = log.bind(session_key=route.session_key)

        # ── envelope ──
        from_address = f"dingtalk:{sender_id}"
        to_address = f"user:{sender_id}" if is_direct else f"group:{conversation_id}"
        msg_ref = data.get("msgId") or str(int(time.time() * 1000))
        now = datetime.now()
        metadata: dict[str, Any] = {
            "msg_id": data.get("msgId", ""),
            "msg_type": content.message_type,
            "session_webhook": data.get("sessionWebhook", ""),
            "conversation_id": conversation_id,
        }
        if cfg.system_prompt:
            metadata["system_prompt"] = cfg.system_prompt
        message = InboundMessage(
            channel=CHANNEL_ID,
            sender_id=sender_id,
            chat_id=sender_id if is_direct else conversation_id,
            content=content.text,
            timestamp=now,
            metadata=metadata,
            body=format_envelope(
                "DingTalk",
                sender_id if is_direct else f"{conversation_id}:{sender_id}",
                f"{sender_nick}: {content.text}",
                now,
            ),
            raw_body=content.text,
            from_address=from_address,
            to_address=to_address,
            sender_name=sender_nick,
            chat_type="direct" if is_direct else "group",
            group_subject=None if is_direct else conversation_id,
            message_sid=f"dingtalk:{msg_ref}",
            account_id=route.account_id,
            agent_id=route.agent_id,
            session_key=route.session_key,
            conversation_key=session.session_key,
            new_session=session.is_new,
        )

        target: CardTarget = UserTarget(sender_id) if is_direct else GroupTarget(conversation_id)
        dispatcher = ReplyDispatcher(self.sender, target, account_id=account_id, log=log)

        preview = re.sub(r"\s+", " ", content.text)[:_PREVIEW_LIMIT]
        label = (
            f"DingTalk[{account_id}] DM from {sender_id}"
            if is_direct
            else f"DingTalk[{account_id}] message in group {conversation_id}"
        )
        self.runtime.enqueue_system_event(
            f"{label}: {preview}", route.session_key, f"dingtalk:message:{msg_ref}"
        )

        log.info(f"dingtalk[{account_id}]: dispatching to agent (session={route.session_key})")
        try:
            await self.runtime.dispatch_reply(message, dispatcher)
        except Exception as exc:
            log.error(f"dingtalk[{account_id}]: failed to dispatch message: {exc}")
            await dispatcher.on_error(exc)
            return message
        log.info(f"dingtalk[{account_id}]: dispatch complete")
        return message
