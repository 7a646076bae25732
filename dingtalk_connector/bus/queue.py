"""Async message queues decoupling the DingTalk channel from the agent."""

import asyncio
from collections import defaultdict, deque

from dingtalk_connector.bus.events import InboundMessage, OutboundMessage, SystemEvent

_MAX_SYSTEM_EVENTS_PER_SESSION = 20


class MessageBus:
    """
    Inbound turns flow channel → agent; outbound messages flow agent → channel.
    System events are kept per session key until the agent drains them.
    """

    def __init__(self) -> None:
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._system_events: dict[str, deque[SystemEvent]] = defaultdict(
            lambda: deque(maxlen=_MAX_SYSTEM_EVENTS_PER_SESSION)
        )

    async def publish_inbound(self, msg: InboundMessage) -> None:
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        return await self.outbound.get()

    def enqueue_system_event(self, event: SystemEvent) -> None:
        self._system_events[event.session_key].append(event)

    def drain_system_events(self, session_key: str) -> list[SystemEvent]:
        events = self._system_events.pop(session_key, None)
        return list(events) if events else []

    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()
