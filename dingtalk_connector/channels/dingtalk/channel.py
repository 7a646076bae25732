"""DingTalk channel – Stream-mode robot connection.

Supports:
- Direct and group chats via the robot message topic
- Ack on every callback, dedup on the callback message id
- AI Card replies with plain-text fallback
- Proactive text / image sends through the outbound adapter
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from dingtalk_connector.agent.runtime import AgentRuntime
from dingtalk_connector.bus.events import OutboundMessage
from dingtalk_connector.bus.queue import MessageBus
from dingtalk_connector.channels.base import BaseChannel
from dingtalk_connector.channels.dingtalk.api import DingTalkClient
from dingtalk_connector.channels.dingtalk.auth import TokenCache
from dingtalk_connector.channels.dingtalk.inbound import CHANNEL_ID, InboundHandler
from dingtalk_connector.channels.dingtalk.send import DingTalkSender, parse_target
from dingtalk_connector.channels.dingtalk.types import SendOptions, SendResult
from dingtalk_connector.config.schema import ResolvedAccount
from dingtalk_connector.session import get_deduplicator, get_session_manager
from dingtalk_connector.session.dedup import MessageDeduplicator
from dingtalk_connector.session.manager import SessionManager

try:
    import dingtalk_stream
    from dingtalk_stream import AckMessage, ChatbotMessage

    DINGTALK_STREAM_AVAILABLE = True
except ImportError:
    DINGTALK_STREAM_AVAILABLE = False
    dingtalk_stream = None  # type: ignore[assignment]


# ── health ──


@dataclass(frozen=True, slots=True)
class ProbeResult:
    ok: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def probe_account(account: ResolvedAccount) -> ProbeResult:
    if not account.configured:
        return ProbeResult(ok=False, error="Not configured")
    details: dict[str, Any] = {"clientId": account.config.client_id}
    if account.config.name:
        details["name"] = account.config.name
    return ProbeResult(ok=True, details=details)


@dataclass
class ChannelStatus:
    account_id: str
    configured: bool = False
    running: bool = False
    last_start_at: datetime | None = None
    last_stop_at: datetime | None = None
    last_error: str | None = None

    def summary(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("last_start_at", "last_stop_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _build_stream_handler(channel: "DingTalkChannel") -> Any:
    class _RobotMessageHandler(dingtalk_stream.ChatbotHandler):
        async def process(self, callback: Any) -> tuple[int, str]:
            headers = getattr(callback, "headers", None)
            message_id = getattr(headers, "message_id", "") or ""
            await channel.on_callback(message_id, callback.data)
            return AckMessage.STATUS_OK, "OK"

    return _RobotMessageHandler()


class DingTalkChannel(BaseChannel):
    """One DingTalk robot account, connected in Stream mode."""

    name = CHANNEL_ID

    def __init__(
        self,
        account: ResolvedAccount,
        bus: MessageBus,
        runtime: AgentRuntime,
        *,
        client: DingTalkClient | None = None,
        tokens: TokenCache | None = None,
        sessions: SessionManager | None = None,
        dedup: MessageDeduplicator | None = None,
    ) -> None:
        super().__init__(account.config, bus)
        self.account = account
        self.runtime = runtime
        self._client = client or DingTalkClient()
        self._tokens = tokens or TokenCache(self._client)
        self._dedup = dedup if dedup is not None else get_deduplicator()
        self.sender = DingTalkSender(account.config, self._client, self._tokens)
        self.inbound = InboundHandler(
            account,
            self.sender,
            runtime,
            sessions if sessions is not None else get_session_manager(),
        )
        self.status = ChannelStatus(account_id=account.account_id, configured=account.configured)
        self._stream_client: Any = None
        self._stream_task: asyncio.Task[None] | None = None
        self._turns: set[asyncio.Task[Any]] = set()

    # ── lifecycle ──

    async def start(self) -> None:
        if self._running:
            return
        if not self.account.configured:
            raise RuntimeError("DingTalk clientId and clientSecret are required")
        if not DINGTALK_STREAM_AVAILABLE:
            raise RuntimeError("dingtalk-stream not installed. Run: pip install dingtalk-stream")

        account_id = self.account.account_id
        logger.info(f"[{account_id}] starting DingTalk Stream client...")

        credential = dingtalk_stream.Credential(self.config.client_id, self.config.client_secret)
        self._stream_client = dingtalk_stream.DingTalkStreamClient(credential)
        self._stream_client.register_callback_handler(
            ChatbotMessage.TOPIC, _build_stream_handler(self)
        )
        self._stream_task = asyncio.create_task(self._run_stream())

        self._running = True
        self.status.running = True
        self.status.last_start_at = datetime.now()
        self.status.last_error = None
        self.runtime.record_activity(CHANNEL_ID, account_id, "inbound")
        logger.info(f"[{account_id}] DingTalk Stream client connected")

    async def _run_stream(self) -> None:
        try:
            await self._stream_client.start()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._running = False
            self._stream_client = None
            self.status.running = False
            self.status.last_stop_at = datetime.now()
            self.status.last_error = str(exc)
            self.runtime.record_activity(CHANNEL_ID, self.account.account_id, "inbound")
            logger.error(f"[{self.account.account_id}] DingTalk Stream client stopped: {exc}")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._stream_task is not None:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
            self._stream_task = None
        self._stream_client = None

        self.status.running = False
        self.status.last_stop_at = datetime.now()
        self.runtime.record_activity(CHANNEL_ID, self.account.account_id, "inbound")
        logger.info(f"[{self.account.account_id}] DingTalk Stream client stopped")

    # ── inbound ──

    async def on_callback(self, message_id: str, data: Any) -> asyncio.Task[Any] | None:
        """Handle one robot callback; the turn runs in the background.

        Returns the turn task, or None when the callback was dropped.
        """
        if message_id and self._dedup.is_processed(message_id):
            logger.debug(f"[DingTalk] duplicate callback {message_id} dropped")
            return None
        if message_id:
            self._dedup.mark_processed(message_id)

        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except ValueError as exc:
                logger.error(f"[DingTalk] unreadable callback payload: {exc}")
                return None
        if not isinstance(data, dict):
            logger.error(f"[DingTalk] unexpected callback payload type: {type(data).__name__}")
            return None

        task = asyncio.create_task(self._handle_turn(data))
        self._turns.add(task)
        task.add_done_callback(self._turns.discard)
        return task

    async def _handle_turn(self, data: dict[str, Any]) -> None:
        try:
            await self.inbound.handle(data)
        except Exception as exc:
            self.status.last_error = str(exc)
            logger.error(f"[DingTalk] message handling failed: {exc}")

    # ── outbound adapter ──

    def _require_configured(self) -> None:
        if not self.account.configured:
            raise RuntimeError("DingTalk not configured")

    async def _send_to(self, to: str, content: str, options: SendOptions) -> SendResult:
        if not to:
            raise RuntimeError("Target is required.")
        try:
            target = parse_target(to)
        except ValueError as exc:
            raise RuntimeError(str(exc)) from exc
        return await self.sender.send_to_target(target, content, options)

    async def send_text(self, to: str, text: str) -> dict[str, str]:
        self._require_configured()
        result = await self._send_to(to, text, SendOptions())
        if not result.ok:
            raise RuntimeError(result.error or "Failed to send message")
        self.runtime.record_activity(CHANNEL_ID, self.account.account_id, "outbound")
        return {"channel": CHANNEL_ID, "message_id": result.process_query_key or "unknown"}

    async def send_media(self, to: str, text: str = "", media_url: str | None = None) -> dict[str, str]:
        self._require_configured()
        if media_url:
            result = await self._send_to(to, media_url, SendOptions(msg_type="image", use_ai_card=False))
        else:
            result = await self._send_to(to, text or "", SendOptions())
        if not result.ok:
            raise RuntimeError(result.error or "Failed to send media")
        self.runtime.record_activity(CHANNEL_ID, self.account.account_id, "outbound")
        return {"channel": CHANNEL_ID, "message_id": result.process_query_key or "unknown"}

    async def send(self, msg: OutboundMessage) -> None:
        if msg.media:
            await self.send_media(msg.chat_id, msg.content, msg.media[0])
        else:
            await self.send_text(msg.chat_id, msg.content)

    async def close(self) -> None:
        await self.stop()
        if self._turns:
            await asyncio.gather(*self._turns, return_exceptions=True)
        await self._client.close()
