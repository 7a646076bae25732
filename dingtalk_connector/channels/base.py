"""Base class for chat channels."""

from abc import ABC, abstractmethod
from typing import Any

from dingtalk_connector.bus.events import OutboundMessage
from dingtalk_connector.bus.queue import MessageBus


class BaseChannel(ABC):
    """
    A chat platform connection.

    Subclasses receive platform events themselves and answer through their own
    reply path; ``send`` covers proactive messages coming off the bus.
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus) -> None:
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin receiving events."""

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect.  Calling it twice must be harmless."""

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """Deliver a proactive message."""

    @property
    def is_running(self) -> bool:
        return self._running
