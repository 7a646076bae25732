"""Chat channels module."""

from dingtalk_connector.channels.base import BaseChannel
from dingtalk_connector.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
