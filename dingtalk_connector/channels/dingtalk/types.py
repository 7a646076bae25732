"""Value types shared by the DingTalk send, card and reply paths."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

MsgType = Literal["text", "markdown", "link", "actionCard", "image"]


@dataclass(frozen=True, slots=True)
class UserTarget:
    user_id: str
    kind: Literal["user"] = field(default="user", init=False)

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id is required")


@dataclass(frozen=True, slots=True)
class GroupTarget:
    open_conversation_id: str
    kind: Literal["group"] = field(default="group", init=False)

    def __post_init__(self) -> None:
        if not self.open_conversation_id:
            raise ValueError("open_conversation_id is required")


CardTarget = Union[UserTarget, GroupTarget]


@dataclass(frozen=True, slots=True)
class SendResult:
    """Outcome of one outbound attempt.  Never mutated after creation."""

    ok: bool
    used_ai_card: bool = False
    process_query_key: str | None = None
    card_instance_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class SendOptions:
    msg_type: MsgType | None = None
    title: str | None = None
    use_ai_card: bool = True
    fallback_to_normal: bool = True


@dataclass(frozen=True, slots=True)
class ProactiveTarget:
    """Loosely-typed selector: one of the three fields must be set."""

    user_id: str | None = None
    user_ids: tuple[str, ...] | None = None
    open_conversation_id: str | None = None


@dataclass(slots=True)
class CardInstance:
    card_instance_id: str
    access_token: str
    inputing_started: bool = False


class CardStatus:
    """AI Card ``flowStatus`` values."""

    PROCESSING = "1"
    INPUTING = "2"
    FINISHED = "3"
