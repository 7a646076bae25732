"""DingTalk (钉钉) robot channel: Stream-mode inbound, AI Card replies."""

from dingtalk_connector.channels.dingtalk.api import DingTalkClient, DingTalkError
from dingtalk_connector.channels.dingtalk.channel import (
    ChannelStatus,
    DingTalkChannel,
    ProbeResult,
    probe_account,
)
from dingtalk_connector.channels.dingtalk.send import DingTalkSender
from dingtalk_connector.channels.dingtalk.types import (
    GroupTarget,
    ProactiveTarget,
    SendOptions,
    SendResult,
    UserTarget,
)

__all__ = [
    "ChannelStatus",
    "DingTalkChannel",
    "DingTalkClient",
    "DingTalkError",
    "DingTalkSender",
    "GroupTarget",
    "ProactiveTarget",
    "ProbeResult",
    "SendOptions",
    "SendResult",
    "UserTarget",
    "probe_account",
]
