"""Per-turn reply dispatcher: AI Card when available, chunked plain text otherwise."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from loguru import logger

from dingtalk_connector.channels.dingtalk.card import CardLifecycle
from dingtalk_connector.channels.dingtalk.send import DingTalkSender
from dingtalk_connector.channels.dingtalk.types import CardTarget, SendOptions
from dingtalk_connector.utils.text import chunk_text

if TYPE_CHECKING:
    from loguru import Logger

ReplyKind = Literal["tool", "block", "final"]


class ReplyDispatcher:
    """
    Consumer of one turn's reply stream.

    The agent side drives ``on_reply_start`` → ``deliver`` (any number of
    times) → ``on_idle``; ``on_error`` replaces ``deliver`` when the turn
    fails.  The dispatcher owns the turn's card exclusively.
    """

    def __init__(
        self,
        sender: DingTalkSender,
        target: CardTarget,
        *,
        text_chunk_limit: int | None = None,
        chunk_mode: str | None = None,
        account_id: str = "default",
        log: Logger | None = None,
    ) -> None:
        self._sender = sender
        self.target = target
        self.text_chunk_limit = text_chunk_limit or sender.config.text_chunk_limit
        self.chunk_mode = chunk_mode or sender.config.chunk_mode
        self.account_id = account_id
        self._card: CardLifecycle = sender.new_card()
        self._log = log or logger
        self._typing = False

    @property
    def card(self) -> CardLifecycle:
        return self._card

    async def on_reply_start(self) -> None:
        # The card's INPUTING state doubles as DingTalk's typing indicator.
        self._typing = True
        self._card.start_creation(self.target)

    async def deliver(self, text: str, kind: ReplyKind = "final") -> None:
        if not text or not text.strip():
            return

        await self._card.wait_for_creation()

        if self._card.has_card:
            if kind == "final":
                await self._card.finish(text)
            # Intermediate fragments are not rendered on the card; it shows the final text only.
            return

        for chunk in chunk_text(text, self.text_chunk_limit, self.chunk_mode):
            result = await self._sender.send_to_target(
                self.target, chunk, SendOptions(use_ai_card=False)
            )
            if not result.ok:
                self._log.warning(f"[DingTalk] plain reply chunk failed: {result.error}")

    async def on_partial_reply(self, text: str) -> None:
        """Accepted for the reply-stream contract; partial text is not streamed."""
        return None

    async def on_error(self, error: BaseException | str, kind: ReplyKind = "final") -> None:
        self._log.error(f"dingtalk[{self.account_id}] {kind} reply failed: {error}")
        try:
            await self._card.finish(f"Error: {error}")
        except Exception as exc:
            self._log.warning(f"[DingTalk] could not finalize card after error: {exc}")
        await self.on_idle()

    async def on_idle(self) -> None:
        self._typing = False

    def on_cleanup(self) -> None:
        self._typing = False

    async def mark_dispatch_idle(self) -> None:
        """Close out a turn that produced no final reply."""
        await self._card.finish("Done")
        await self.on_idle()
