"""AI Card ("live card") transport and per-turn lifecycle.

A card goes through three phases: it is created and delivered to a user or
group, receives content updates while the agent is writing, and is finally
marked finished.  ``CardLifecycle`` owns exactly one such card for one turn
and is the only thing that reads or writes it.

State machine::

    ABSENT → CREATING → CREATED → STREAMING → FINISHED
                  ↘ FAILED
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Any

from loguru import logger

from dingtalk_connector.channels.dingtalk.api import DingTalkClient
from dingtalk_connector.channels.dingtalk.auth import TokenCache
from dingtalk_connector.channels.dingtalk.types import (
    CardInstance,
    CardStatus,
    CardTarget,
    GroupTarget,
)
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.settings import get_settings

_CONTENT_KEY = "msgContent"
_CARD_ORDER = json.dumps({"order": [_CONTENT_KEY]})


def describe_target(target: CardTarget) -> str:
    if isinstance(target, GroupTarget):
        return f"group {target.open_conversation_id}"
    return f"user {target.user_id}"


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


class AICardApi:
    """Card transport: create + deliver, status transitions, content streaming."""

    def __init__(
        self,
        client: DingTalkClient,
        tokens: TokenCache,
        template_id: str | None = None,
    ) -> None:
        self._client = client
        self._tokens = tokens
        self._template_id = template_id or get_settings().ai_card_template_id

    async def create_card(self, config: DingTalkAccountConfig, target: CardTarget) -> CardInstance:
        """Create a card instance and deliver it to *target*.  Raises on failure."""
        token = await self._tokens.get_access_token(config)
        card_id = f"card_{int(time.time() * 1000)}_{_short_id()}"

        await self._client.create_card_instance(token, {
            "cardTemplateId": self._template_id,
            "outTrackId": card_id,
            "cardData": {"cardParamMap": {}},
            "callbackType": "STREAM",
            "imGroupOpenSpaceModel": {"supportForward": True},
            "imRobotOpenSpaceModel": {"supportForward": True},
        })

        deliver: dict[str, Any] = {"outTrackId": card_id, "userIdType": 1}
        if isinstance(target, GroupTarget):
            deliver["openSpaceId"] = f"dtv1.card//IM_GROUP.{target.open_conversation_id}"
            deliver["imGroupOpenDeliverModel"] = {"robotCode": config.client_id}
        else:
            deliver["openSpaceId"] = f"dtv1.card//IM_ROBOT.{target.user_id}"
            deliver["imRobotOpenDeliverModel"] = {"spaceType": "IM_ROBOT"}
        await self._client.deliver_card(token, deliver)

        return CardInstance(card_instance_id=card_id, access_token=token)

    async def set_status(self, card: CardInstance, status: str, content: str = "") -> None:
        await self._client.update_card_instance(card.access_token, {
            "outTrackId": card.card_instance_id,
            "cardData": {
                "cardParamMap": {
                    "flowStatus": status,
                    _CONTENT_KEY: content,
                    "staticMsgContent": "",
                    "sys_full_json_obj": _CARD_ORDER,
                }
            },
        })

    async def stream_content(self, card: CardInstance, content: str, is_final: bool) -> None:
        """Replace the card's content slot (``isFull``) – idempotent per call."""
        await self._client.stream_card(card.access_token, {
            "outTrackId": card.card_instance_id,
            "guid": f"{int(time.time() * 1000)}_{_short_id()}",
            "key": _CONTENT_KEY,
            "content": content,
            "isFull": True,
            "isFinalize": is_final,
            "isError": False,
        })


class CardState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    CREATED = "created"
    STREAMING = "streaming"
    FINISHED = "finished"
    FAILED = "failed"


class CardLifecycle:
    """One card for one turn.

    ``start_creation`` is fire-and-forget; the creation task is retained and
    every later decision point awaits it before looking at the card.
    """

    def __init__(self, api: AICardApi, config: DingTalkAccountConfig) -> None:
        self._api = api
        self._config = config
        self._state = CardState.ABSENT
        self._card: CardInstance | None = None
        self._creation: asyncio.Task[None] | None = None

    @property
    def state(self) -> CardState:
        return self._state

    @property
    def has_card(self) -> bool:
        return self._card is not None

    @property
    def card_instance_id(self) -> str | None:
        return self._card.card_instance_id if self._card else None

    def start_creation(self, target: CardTarget) -> None:
        if self._creation is not None or self._card is not None:
            return
        if self._state is not CardState.ABSENT:
            return
        self._state = CardState.CREATING
        self._creation = asyncio.create_task(self._create(target))

    async def _create(self, target: CardTarget) -> None:
        try:
            self._card = await self._api.create_card(self._config, target)
            self._state = CardState.CREATED
            logger.debug(f"[DingTalk][AICard] created {self._card.card_instance_id} for {describe_target(target)}")
        except Exception as exc:
            self._card = None
            self._state = CardState.FAILED
            logger.error(f"[DingTalk][AICard] card creation failed for {describe_target(target)}: {exc}")

    async def wait_for_creation(self) -> None:
        if self._creation is not None:
            await self._creation

    async def push_content(self, text: str, is_final: bool = False) -> bool:
        """Replace the card content.  Returns False when the push did not land."""
        await self.wait_for_creation()
        card = self._card
        if card is None or self._state not in (CardState.CREATED, CardState.STREAMING):
            return False

        if not card.inputing_started:
            # The card only accepts streamed content once it is in INPUTING.
            try:
                await self._api.set_status(card, CardStatus.INPUTING)
            except Exception as exc:
                logger.warning(f"[DingTalk][AICard] INPUTING status failed: {exc}")
            card.inputing_started = True
            self._state = CardState.STREAMING

        try:
            await self._api.stream_content(card, text, is_final)
        except Exception as exc:
            logger.warning(f"[DingTalk][AICard] content push failed: {exc}")
            return False
        return True

    async def finish(self, final_text: str) -> bool:
        """Push *final_text*, mark the card FINISHED and release it.

        Returns True when the text reached the card through either the stream
        push or the FINISHED update.  No-op (returns False) when no card exists.
        """
        await self.wait_for_creation()
        card = self._card
        if card is None:
            self._creation = None
            return False

        delivered = await self.push_content(final_text, is_final=True)
        try:
            # The FINISHED update carries the text too, so the card still renders it.
            await self._api.set_status(card, CardStatus.FINISHED, final_text)
            delivered = True
        except Exception as exc:
            logger.warning(f"[DingTalk][AICard] FINISHED status failed: {exc}")
        self._card = None
        self._creation = None
        self._state = CardState.FINISHED
        return delivered
