import asyncio

import pytest
from loguru import logger

from dingtalk_connector.agent.runtime import AgentRoute
from dingtalk_connector.bus.queue import MessageBus
from dingtalk_connector.channels.dingtalk.channel import DingTalkChannel
from dingtalk_connector.channels.dingtalk.inbound import InboundHandler, extract_message_content
from dingtalk_connector.config.schema import DingTalkAccountConfig, ResolvedAccount
from dingtalk_connector.session.dedup import MessageDeduplicator
from dingtalk_connector.session.manager import SessionManager

BATCH = "POST /v1.0/robot/oToMessages/batchSend"
STREAM = "PUT /v1.0/card/streaming"


class RecordingRuntime:
    """AgentRuntime double: records calls and replies with a fixed text."""

    def __init__(self, reply: str | None = "hi there", fail: Exception | None = None) -> None:
        self.reply = reply
        self.fail = fail
        self.peers = []
        self.dispatched = []
        self.events = []
        self.activity = []

    def resolve_route(self, channel, account_id, peer):
        self.peers.append(peer)
        return AgentRoute(f"agent:main:{channel}:{peer.kind}:{peer.id}", "main", account_id)

    async def dispatch_reply(self, message, dispatcher):
        self.dispatched.append(message)
        if self.fail is not None:
            await dispatcher.on_reply_start()
            raise self.fail
        await dispatcher.on_reply_start()
        if self.reply:
            await dispatcher.deliver(self.reply, "final")
        await dispatcher.on_idle()

    def enqueue_system_event(self, text, session_key, context_key):
        self.events.append((text, session_key, context_key))

    def record_activity(self, channel, account_id, direction):
        self.activity.append((channel, account_id, direction))


def dm(text: str, msg_id: str = "msg-1", **extra) -> dict:
    data = {
        "msgtype": "text",
        "text": {"content": text},
        "conversationType": "1",
        "senderStaffId": "staff-1",
        "senderId": "$:LWCP_v1:$abc",
        "senderNick": "Alice",
        "conversationId": "cid-dm",
        "msgId": msg_id,
        "sessionWebhook": "https://oapi.dingtalk.com/robot/sendBySession?session=s",
    }
    data.update(extra)
    return data


@pytest.fixture
def sessions() -> SessionManager:
    return SessionManager()


@pytest.fixture
def runtime() -> RecordingRuntime:
    return RecordingRuntime()


@pytest.fixture
def handler(account, sender, runtime, sessions) -> InboundHandler:
    return InboundHandler(account, sender, runtime, sessions)


# ── content extraction ──


@pytest.mark.parametrize(
    "data, expected",
    [
        ({"msgtype": "text", "text": {"content": "  hi  "}}, ("hi", "text")),
        (
            {"msgtype": "richText", "content": {"richText": [{"type": "text", "text": "a"}, {"type": "picture"}, {"type": "text", "text": "b"}]}},
            ("ab", "richText"),
        ),
        ({"msgtype": "richText", "content": {"richText": [{"type": "picture"}]}}, ("[richText]", "richText")),
        ({"msgtype": "picture", "content": {}}, ("[picture]", "picture")),
        ({"msgtype": "audio", "content": {"recognition": "voice words"}}, ("voice words", "audio")),
        ({"msgtype": "audio", "content": {}}, ("[audio]", "audio")),
        ({"msgtype": "video"}, ("[video]", "video")),
        ({"msgtype": "file", "content": {"fileName": "a.pdf"}}, ("[file: a.pdf]", "file")),
        ({"msgtype": "interactiveCard"}, ("[interactiveCard]", "interactiveCard")),
        ({}, ("", "text")),
    ],
)
def test_extract_message_content(data, expected):
    content = extract_message_content(data)
    assert (content.text, content.message_type) == expected


# ── scenario A ──


@pytest.mark.asyncio
async def test_direct_message_is_answered_through_card(fake_dingtalk, handler, runtime, sessions):
    message = await handler.handle(dm("hello"))

    assert message is not None
    assert runtime.peers[0].kind == "direct"
    assert runtime.peers[0].id == "staff-1"
    assert message.session_key == "agent:main:dingtalk:direct:staff-1"
    assert message.conversation_key == "dingtalk-connector:staff-1"
    assert message.new_session is False
    assert message.from_address == "dingtalk:staff-1"
    assert message.to_address == "user:staff-1"
    assert message.message_sid == "dingtalk:msg-1"
    assert message.body.endswith("Alice: hello")
    assert message.content == "hello"

    assert fake_dingtalk.bodies(STREAM)[-1]["content"] == "hi there"
    assert fake_dingtalk.plain_routes == []
    assert sessions.get("staff-1") is not None


@pytest.mark.asyncio
async def test_direct_message_falls_back_when_card_fails(fake_dingtalk, handler):
    fake_dingtalk.fail["POST /v1.0/card/instances"] = 500
    await handler.handle(dm("hello"))

    body = fake_dingtalk.bodies(BATCH)[0]
    assert body["userIds"] == ["staff-1"]
    assert body["msgParam"] == '{"content": "hi there"}'
    assert fake_dingtalk.count(STREAM) == 0


@pytest.mark.asyncio
async def test_group_message_targets_conversation(fake_dingtalk, handler, runtime):
    message = await handler.handle(dm("hello", conversationType="2", conversationId="cid-group"))

    assert runtime.peers[0].kind == "group"
    assert runtime.peers[0].id == "cid-group"
    assert message.to_address == "group:cid-group"
    assert message.group_subject == "cid-group"
    deliver = fake_dingtalk.bodies("POST /v1.0/card/instances/deliver")[0]
    assert deliver["openSpaceId"] == "dtv1.card//IM_GROUP.cid-group"


@pytest.mark.asyncio
async def test_system_event_preview(handler, runtime):
    await handler.handle(dm("line one\n\n   line two " + "x" * 300, msg_id="m-9"))
    text, session_key, context_key = runtime.events[0]
    assert text.startswith("DingTalk[default] DM from staff-1: line one line two")
    assert len(text.split(": ", 1)[1]) == 160
    assert session_key == "agent:main:dingtalk:direct:staff-1"
    assert context_key == "dingtalk:message:m-9"


# ── scenario B ──


@pytest.mark.asyncio
async def test_reset_command_rotates_without_routing_or_reply(fake_dingtalk, handler, runtime, sessions):
    await handler.handle(dm("hello", msg_id="m-1"))
    before = sessions.get("staff-1").session_key
    fake_dingtalk.requests.clear()

    result = await handler.handle(dm("  /reset ", msg_id="m-2"))

    assert result is None
    assert len(runtime.peers) == 1
    assert sessions.get("staff-1").session_key != before
    assert fake_dingtalk.requests == []


@pytest.mark.asyncio
async def test_turn_after_timeout_is_flagged_new(handler, sessions, account_config):
    account_config.session_timeout = 0
    await handler.handle(dm("first", msg_id="m-1"))
    await asyncio.sleep(0.01)
    message = await handler.handle(dm("second", msg_id="m-2"))
    assert message.new_session is True
    assert message.conversation_key.startswith("dingtalk-connector:staff-1:")


# ── scenario C ──


@pytest.mark.asyncio
async def test_duplicate_callback_is_dropped_before_routing(fake_dingtalk, account, dingtalk_client, tokens, sessions):
    runtime = RecordingRuntime()
    channel = DingTalkChannel(
        account,
        MessageBus(),
        runtime,
        client=dingtalk_client,
        tokens=tokens,
        sessions=sessions,
        dedup=MessageDeduplicator(),
    )

    first = await channel.on_callback("stream-msg-1", dm("hello"))
    second = await channel.on_callback("stream-msg-1", dm("hello"))
    await first

    assert second is None
    assert len(runtime.peers) == 1
    assert len(runtime.dispatched) == 1


@pytest.mark.asyncio
async def test_callback_accepts_json_string(account, dingtalk_client, tokens, sessions):
    import json

    runtime = RecordingRuntime(reply=None)
    channel = DingTalkChannel(
        account, MessageBus(), runtime, client=dingtalk_client, tokens=tokens,
        sessions=sessions, dedup=MessageDeduplicator(),
    )
    task = await channel.on_callback("id-1", json.dumps(dm("hello")))
    await task
    assert len(runtime.dispatched) == 1
    assert await channel.on_callback("id-2", "{broken") is None


# ── dispatch failures ──


@pytest.mark.asyncio
async def test_dispatch_error_finishes_card_with_error(fake_dingtalk, account, sender, sessions):
    runtime = RecordingRuntime(fail=RuntimeError("model offline"))
    handler = InboundHandler(account, sender, runtime, sessions)

    message = await handler.handle(dm("hello"))

    assert message is not None
    assert fake_dingtalk.bodies(STREAM)[-1]["content"] == "Error: model offline"


# ── access policy ──


def _handler_with(sender, runtime, sessions, **config) -> InboundHandler:
    cfg = DingTalkAccountConfig(client_id="ding-app", client_secret="s3cret", **config)
    account = ResolvedAccount("default", cfg, True, True)
    return InboundHandler(account, sender, runtime, sessions)


@pytest.mark.asyncio
async def test_dm_allowlist_blocks_unknown_sender(sender, runtime, sessions):
    handler = _handler_with(sender, runtime, sessions, dm_policy="allowlist", allow_from=["dingtalk:staff-2"])
    assert await handler.handle(dm("hello")) is None
    assert runtime.peers == []


@pytest.mark.asyncio
async def test_dm_allowlist_admits_listed_sender(sender, runtime, sessions):
    handler = _handler_with(sender, runtime, sessions, dm_policy="allowlist", allow_from=["dd:staff-1"])
    assert await handler.handle(dm("hello")) is not None


@pytest.mark.asyncio
async def test_pairing_policy_behaves_as_open(sender, runtime, sessions):
    handler = _handler_with(sender, runtime, sessions, dm_policy="pairing")
    assert await handler.handle(dm("hello")) is not None


@pytest.mark.asyncio
async def test_group_allowlist_matches_conversation_id(sender, runtime, sessions):
    handler = _handler_with(
        sender, runtime, sessions, group_policy="allowlist", group_allow_from=["cid-ok"]
    )
    assert await handler.handle(dm("hi", conversationType="2", conversationId="cid-other")) is None
    assert await handler.handle(dm("hi", msg_id="m-2", conversationType="2", conversationId="cid-ok")) is not None


@pytest.mark.asyncio
async def test_empty_text_is_ignored(handler, runtime):
    assert await handler.handle(dm("   ")) is None
    assert runtime.peers == []


# ── account options ──


@pytest.mark.asyncio
async def test_system_prompt_travels_with_the_turn(sender, runtime, sessions):
    handler = _handler_with(sender, runtime, sessions, system_prompt="Answer in English.")
    message = await handler.handle(dm("hello"))
    assert message.metadata["system_prompt"] == "Answer in English."


@pytest.mark.asyncio
async def test_system_prompt_absent_by_default(handler):
    message = await handler.handle(dm("hello"))
    assert "system_prompt" not in message.metadata


@pytest.mark.asyncio
async def test_debug_logs_raw_callback(sender, runtime, sessions):
    lines: list[str] = []
    sink_id = logger.add(lambda m: lines.append(str(m)), level="INFO", format="{message}")
    try:
        await _handler_with(sender, runtime, sessions, debug=True).handle(dm("hello", msg_id="dbg-1"))
        await _handler_with(sender, runtime, sessions).handle(dm("hello", msg_id="dbg-2"))
    finally:
        logger.remove(sink_id)

    raw = [line for line in lines if "raw callback" in line]
    assert len(raw) == 1
    assert "dbg-1" in raw[0]
