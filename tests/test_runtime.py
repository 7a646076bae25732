import asyncio

import pytest

from dingtalk_connector.agent.runtime import (
    BusAgentRuntime,
    Peer,
    StaticRouter,
    echo_agent,
    load_agent,
)
from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.bus.queue import MessageBus

SESSION = "agent:main:dingtalk:direct:u1"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def on_reply_start(self) -> None:
        self.calls.append(("start",))

    async def deliver(self, text: str, kind: str = "final") -> None:
        self.calls.append(("deliver", text, kind))

    async def on_error(self, error, kind: str = "final") -> None:
        self.calls.append(("error", str(error)))

    async def on_idle(self) -> None:
        self.calls.append(("idle",))

    def on_cleanup(self) -> None:
        self.calls.append(("cleanup",))

    async def mark_dispatch_idle(self) -> None:
        self.calls.append(("dispatch_idle",))

    @property
    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


def _message(content: str = "hello") -> InboundMessage:
    return InboundMessage(
        channel="dingtalk",
        sender_id="u1",
        chat_id="u1",
        content=content,
        session_key=SESSION,
    )


def test_static_router_session_key():
    route = StaticRouter("ops").resolve("dingtalk", "acct", Peer("group", "cid-1"))
    assert route.session_key == "agent:ops:dingtalk:group:cid-1"
    assert route.agent_id == "ops"
    assert route.account_id == "acct"


def test_load_agent_imports_callable():
    assert load_agent("dingtalk_connector.agent.runtime:echo_agent") is echo_agent


@pytest.mark.parametrize("target", ["no_colon", ":func", "module:", "dingtalk_connector.agent.runtime:Peer_missing"])
def test_load_agent_rejects_bad_targets(target):
    with pytest.raises(ValueError):
        load_agent(target)


@pytest.mark.asyncio
async def test_inline_turn_delivers_final_reply():
    runtime = BusAgentRuntime(MessageBus())
    dispatcher = RecordingDispatcher()

    await runtime.dispatch_reply(_message("ping"), dispatcher)

    assert dispatcher.calls == [("start",), ("cleanup",), ("deliver", "ping", "final"), ("idle",)]


@pytest.mark.asyncio
async def test_empty_reply_marks_dispatch_idle():
    async def silent(message):
        return None

    runtime = BusAgentRuntime(MessageBus(), agent=silent)
    dispatcher = RecordingDispatcher()
    await runtime.dispatch_reply(_message(), dispatcher)
    assert dispatcher.names == ["start", "cleanup", "dispatch_idle"]


@pytest.mark.asyncio
async def test_agent_exception_reaches_on_error():
    async def broken(message):
        raise RuntimeError("model offline")

    runtime = BusAgentRuntime(MessageBus(), agent=broken)
    dispatcher = RecordingDispatcher()
    await runtime.dispatch_reply(_message(), dispatcher)
    assert dispatcher.calls == [("start",), ("error", "model offline"), ("cleanup",)]


@pytest.mark.asyncio
async def test_system_events_are_drained_into_metadata():
    seen: list[InboundMessage] = []

    async def agent(message):
        seen.append(message)
        return "ok"

    runtime = BusAgentRuntime(MessageBus(), agent=agent)
    runtime.enqueue_system_event("DingTalk[default] DM from u1: hi", SESSION, "dingtalk:message:m1")
    runtime.enqueue_system_event("other", "agent:main:dingtalk:direct:u2", "ctx")

    await runtime.dispatch_reply(_message(), RecordingDispatcher())
    await runtime.dispatch_reply(_message(), RecordingDispatcher())

    assert seen[0].metadata["system_events"] == ["DingTalk[default] DM from u1: hi"]
    assert "system_events" not in seen[1].metadata


@pytest.mark.asyncio
async def test_worker_pool_runs_published_turns():
    bus = MessageBus()
    runtime = BusAgentRuntime(bus, max_concurrent_workers=2)
    task = asyncio.create_task(runtime.run())
    await asyncio.sleep(0)

    dispatchers = [RecordingDispatcher() for _ in range(3)]
    await asyncio.gather(
        *(runtime.dispatch_reply(_message(f"m{i}"), d) for i, d in enumerate(dispatchers))
    )

    for i, d in enumerate(dispatchers):
        assert ("deliver", f"m{i}", "final") in d.calls
    assert bus.inbound_size == 0

    runtime.stop()
    await asyncio.wait_for(task, timeout=2)


def test_record_activity_appends():
    runtime = BusAgentRuntime(MessageBus())
    runtime.record_activity("dingtalk", "default", "outbound")
    assert [(a.channel, a.account_id, a.direction) for a in runtime.activity] == [
        ("dingtalk", "default", "outbound")
    ]
