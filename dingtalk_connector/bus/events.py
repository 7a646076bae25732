"""Event types for the message bus."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class InboundMessage:
    """One normalized DingTalk turn, as handed to the agent."""

    channel: str  # always "dingtalk" for this connector
    sender_id: str  # staff id when present, else the platform sender id
    chat_id: str  # sender id for DMs, open conversation id for groups
    content: str  # text for the agent (no envelope)
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)  # raw callback fields

    # ── envelope ──
    body: str = ""  # envelope-formatted body
    raw_body: str = ""
    from_address: str = ""  # dingtalk:<sender>
    to_address: str = ""  # user:<id> | group:<cid>
    sender_name: str = ""
    chat_type: str = "direct"  # "direct" | "group"
    group_subject: str | None = None
    message_sid: str = ""
    originating_channel: str = "dingtalk"

    # ── routing ──
    account_id: str = "default"
    agent_id: str = ""
    session_key: str = ""  # route session key (agent side)
    conversation_key: str = ""  # DingTalk conversation session (rotates on reset / timeout)
    new_session: bool = False

    @property
    def is_direct(self) -> bool:
        return self.chat_type == "direct"


@dataclass
class OutboundMessage:
    """Proactive message to send through a channel."""

    channel: str
    chat_id: str  # user:<id> | group:<cid> | bare user id
    content: str
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SystemEvent:
    """Short human-readable note attached to an agent session."""

    text: str
    session_key: str
    context_key: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
