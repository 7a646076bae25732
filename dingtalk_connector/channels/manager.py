"""Channel manager: one DingTalkChannel per enabled account, plus outbound routing."""

from __future__ import annotations

import asyncio

from loguru import logger

from dingtalk_connector.agent.runtime import AgentRuntime
from dingtalk_connector.bus.events import OutboundMessage
from dingtalk_connector.bus.queue import MessageBus
from dingtalk_connector.channels.dingtalk.api import DingTalkClient
from dingtalk_connector.channels.dingtalk.auth import TokenCache
from dingtalk_connector.channels.dingtalk.channel import DingTalkChannel
from dingtalk_connector.config.schema import Config


class ChannelManager:
    """Owns the channels and pumps ``bus.outbound`` into them."""

    def __init__(
        self,
        config: Config,
        bus: MessageBus,
        runtime: AgentRuntime,
        client: DingTalkClient | None = None,
    ) -> None:
        self.config = config
        self.bus = bus
        self._client = client or DingTalkClient()
        self._tokens = TokenCache(self._client)
        self.channels: dict[str, DingTalkChannel] = {}
        self._dispatch_task: asyncio.Task[None] | None = None

        for account_id in config.list_dingtalk_account_ids():
            account = config.resolve_dingtalk_account(account_id)
            if not account.enabled:
                logger.info(f"DingTalk account {account_id} disabled, skipped")
                continue
            if not account.configured:
                logger.warning(f"DingTalk account {account_id} has no clientId / clientSecret, skipped")
                continue
            self.channels[account_id] = DingTalkChannel(
                account, bus, runtime, client=self._client, tokens=self._tokens
            )

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.channels)

    def get_channel(self, account_id: str = "default") -> DingTalkChannel | None:
        return self.channels.get(account_id)

    async def start_all(self) -> None:
        if not self.channels:
            logger.warning("No DingTalk accounts enabled")
            return
        self._dispatch_task = asyncio.create_task(self._dispatch_outbound())
        for account_id, channel in self.channels.items():
            try:
                await channel.start()
            except Exception as exc:
                channel.status.last_error = str(exc)
                logger.error(f"Failed to start DingTalk account {account_id}: {exc}")

    async def stop_all(self) -> None:
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        for account_id, channel in self.channels.items():
            try:
                await channel.stop()
            except Exception as exc:
                logger.warning(f"Error stopping DingTalk account {account_id}: {exc}")
        await self._client.close()

    async def _dispatch_outbound(self) -> None:
        while True:
            msg = await self.bus.consume_outbound()
            await self.deliver(msg)

    async def deliver(self, msg: OutboundMessage) -> None:
        account_id = msg.metadata.get("account_id", "default")
        channel = self.get_channel(account_id)
        if channel is None:
            logger.warning(f"Outbound message for unknown DingTalk account {account_id}, dropped")
            return
        try:
            await channel.send(msg)
        except Exception as exc:
            logger.error(f"Outbound send to {msg.chat_id} failed: {exc}")
