"""Agent runtime: routing, reply dispatch, system events and activity records.

The channel talks to the agent side only through the ``AgentRuntime``
protocol.  ``BusAgentRuntime`` is the in-process default: turns travel over
the ``MessageBus`` to a pool of workers that call a user-supplied async agent
function and stream its answer into the turn's reply dispatcher.
"""

from __future__ import annotations

import asyncio
import importlib
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Literal, Protocol

from loguru import logger

from dingtalk_connector.bus.events import InboundMessage, SystemEvent
from dingtalk_connector.bus.queue import MessageBus

if TYPE_CHECKING:
    from dingtalk_connector.channels.dingtalk.reply import ReplyDispatcher

PeerKind = Literal["direct", "group"]
Direction = Literal["inbound", "outbound"]

AgentHandler = Callable[[InboundMessage], Awaitable["str | None"]]


@dataclass(frozen=True, slots=True)
class Peer:
    kind: PeerKind
    id: str


@dataclass(frozen=True, slots=True)
class AgentRoute:
    session_key: str
    agent_id: str
    account_id: str


@dataclass(frozen=True, slots=True)
class ActivityRecord:
    channel: str
    account_id: str
    direction: Direction
    at: datetime = field(default_factory=datetime.now)


class AgentRuntime(Protocol):
    def resolve_route(self, channel: str, account_id: str, peer: Peer) -> AgentRoute: ...

    async def dispatch_reply(self, message: InboundMessage, dispatcher: "ReplyDispatcher") -> None: ...

    def enqueue_system_event(self, text: str, session_key: str, context_key: str) -> None: ...

    def record_activity(self, channel: str, account_id: str, direction: Direction) -> None: ...


class StaticRouter:
    """Every peer goes to one agent; one agent session per peer."""

    def __init__(self, agent_id: str = "main") -> None:
        self.agent_id = agent_id

    def resolve(self, channel: str, account_id: str, peer: Peer) -> AgentRoute:
        return AgentRoute(
            session_key=f"agent:{self.agent_id}:{channel}:{peer.kind}:{peer.id}",
            agent_id=self.agent_id,
            account_id=account_id,
        )


async def echo_agent(message: InboundMessage) -> str:
    """Fallback agent: answers with the text it received."""
    return message.content


def load_agent(target: str) -> AgentHandler:
    """Import ``package.module:function`` and return the callable."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"agent must look like 'module:function', got {target!r}")
    module = importlib.import_module(module_name)
    handler = getattr(module, attr, None)
    if not callable(handler):
        raise ValueError(f"{target!r} is not callable")
    return handler


class BusAgentRuntime:
    """In-process ``AgentRuntime`` backed by a ``MessageBus`` and a worker pool."""

    def __init__(
        self,
        bus: MessageBus,
        agent: AgentHandler = echo_agent,
        router: StaticRouter | None = None,
        max_concurrent_workers: int = 4,
    ) -> None:
        self.bus = bus
        self._agent = agent
        self._router = router or StaticRouter()
        self.max_concurrent_workers = max(1, max_concurrent_workers)
        self._running = False
        self._worker_tasks: list[asyncio.Task[None]] = []
        self._pending: dict[str, tuple["ReplyDispatcher", asyncio.Future[None]]] = {}
        self.activity: list[ActivityRecord] = []

    # ── AgentRuntime ──

    def resolve_route(self, channel: str, account_id: str, peer: Peer) -> AgentRoute:
        return self._router.resolve(channel, account_id, peer)

    def enqueue_system_event(self, text: str, session_key: str, context_key: str) -> None:
        self.bus.enqueue_system_event(
            SystemEvent(text=text, session_key=session_key, context_key=context_key)
        )

    def record_activity(self, channel: str, account_id: str, direction: Direction) -> None:
        self.activity.append(ActivityRecord(channel, account_id, direction))
        logger.debug(f"Activity recorded: {channel}[{account_id}] {direction}")

    async def dispatch_reply(self, message: InboundMessage, dispatcher: "ReplyDispatcher") -> None:
        """Run one turn; returns once the reply has been delivered."""
        if not self._running:
            await self._run_turn(message, dispatcher)
            return

        turn_id = uuid.uuid4().hex
        message.metadata["turn_id"] = turn_id
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending[turn_id] = (dispatcher, done)
        await self.bus.publish_inbound(message)
        await done

    # ── turn execution ──

    async def _run_turn(self, message: InboundMessage, dispatcher: "ReplyDispatcher") -> None:
        events = self.bus.drain_system_events(message.session_key)
        if events:
            message.metadata["system_events"] = [e.text for e in events]

        await dispatcher.on_reply_start()
        try:
            reply = await self._agent(message)
        except Exception as exc:
            logger.error(f"Agent failed for session {message.session_key}: {exc}")
            await dispatcher.on_error(exc)
            return
        finally:
            dispatcher.on_cleanup()

        if reply and reply.strip():
            await dispatcher.deliver(reply, "final")
            await dispatcher.on_idle()
        else:
            await dispatcher.mark_dispatch_idle()

    async def _worker_loop(self, worker_id: int) -> None:
        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            entry = self._pending.pop(msg.metadata.get("turn_id", ""), None)
            if entry is None:
                logger.warning(f"Worker {worker_id}: no dispatcher for turn {msg.message_sid}, dropped")
                continue
            dispatcher, done = entry
            try:
                await self._run_turn(msg, dispatcher)
            except Exception as exc:
                logger.error(f"Worker {worker_id} turn failed: {exc}")
            finally:
                if not done.done():
                    done.set_result(None)

    async def run(self) -> None:
        """Run the worker pool until ``stop`` is called."""
        self._running = True
        logger.info(f"Agent runtime started with {self.max_concurrent_workers} workers")
        self._worker_tasks = [
            asyncio.create_task(self._worker_loop(i + 1))
            for i in range(self.max_concurrent_workers)
        ]
        try:
            await asyncio.gather(*self._worker_tasks)
        finally:
            for task in self._worker_tasks:
                task.cancel()
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
            self._worker_tasks.clear()
            for _, done in self._pending.values():
                if not done.done():
                    done.set_result(None)
            self._pending.clear()

    def stop(self) -> None:
        self._running = False
        for task in self._worker_tasks:
            task.cancel()
        logger.info("Agent runtime stopping")
