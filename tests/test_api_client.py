import httpx
import pytest

from dingtalk_connector.channels.dingtalk.api import DingTalkClient, DingTalkError
from dingtalk_connector.channels.dingtalk.auth import TokenCache
from dingtalk_connector.config.schema import DingTalkAccountConfig


def _client(handler, settings) -> DingTalkClient:
    return DingTalkClient(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_access_token_request_shape(fake_dingtalk, dingtalk_client):
    token, expire_in = await dingtalk_client.get_access_token("key", "secret")
    assert (token, expire_in) == ("tok-1", 7200)
    assert fake_dingtalk.bodies("POST /v1.0/oauth2/accessToken") == [{"appKey": "key", "appSecret": "secret"}]


@pytest.mark.asyncio
async def test_token_header_is_sent(fake_dingtalk, dingtalk_client):
    await dingtalk_client.send_to_group("tok-x", {"robotCode": "r"})
    assert fake_dingtalk.requests[-1].headers["x-acs-dingtalk-access-token"] == "tok-x"


@pytest.mark.asyncio
async def test_http_error_status_raises_with_remote_message(fake_dingtalk, dingtalk_client):
    fake_dingtalk.fail["POST /v1.0/robot/groupMessages/send"] = 403
    with pytest.raises(DingTalkError, match="rejected"):
        await dingtalk_client.send_to_group("tok", {})


@pytest.mark.asyncio
async def test_errcode_body_raises(settings):
    def handler(request):
        return httpx.Response(200, json={"errcode": 310000, "errmsg": "keywords not in content"})

    client = _client(handler, settings)
    with pytest.raises(DingTalkError, match="310000"):
        await client.post_session_webhook("https://oapi.dingtalk.com/robot/sendBySession?session=x", "tok", {})


@pytest.mark.asyncio
async def test_transport_error_becomes_dingtalk_error(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler, settings)
    with pytest.raises(DingTalkError, match="connection refused"):
        await client.get_access_token("k", "s")


@pytest.mark.asyncio
async def test_empty_body_is_ok(settings):
    client = _client(lambda request: httpx.Response(200), settings)
    assert await client.stream_card("tok", {"outTrackId": "c"}) == {}


# ── token cache ──


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_token_is_cached_until_refresh_margin(fake_dingtalk, dingtalk_client, account_config):
    clock = Clock()
    cache = TokenCache(dingtalk_client, clock=clock)

    assert await cache.get_access_token(account_config) == "tok-1"
    clock.now += 7000
    await cache.get_access_token(account_config)
    assert fake_dingtalk.count("POST /v1.0/oauth2/accessToken") == 1

    # Inside the last 60 seconds the token is refreshed.
    clock.now += 150
    await cache.get_access_token(account_config)
    assert fake_dingtalk.count("POST /v1.0/oauth2/accessToken") == 2


@pytest.mark.asyncio
async def test_missing_credentials_raise(dingtalk_client):
    cache = TokenCache(dingtalk_client)
    with pytest.raises(DingTalkError):
        await cache.get_access_token(DingTalkAccountConfig(client_id="only-id"))
