"""Message bus module for decoupled channel-agent communication."""

from dingtalk_connector.bus.events import InboundMessage, OutboundMessage, SystemEvent
from dingtalk_connector.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage", "SystemEvent"]
