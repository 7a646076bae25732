import json

import httpx
import pytest

from dingtalk_connector.channels.dingtalk.api import DingTalkClient
from dingtalk_connector.channels.dingtalk.auth import TokenCache
from dingtalk_connector.channels.dingtalk.send import DingTalkSender
from dingtalk_connector.config.schema import DingTalkAccountConfig, ResolvedAccount
from dingtalk_connector.settings import ConnectorSettings


class FakeDingTalk:
    """In-process stand-in for api.dingtalk.com.

    Every request is recorded.  ``fail`` maps ``"METHOD /path"`` to an HTTP
    status that the route answers with instead of success.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fail: dict[str, int] = {}
        self.batch_response: dict = {"processQueryKey": "pqk-user"}
        self.group_response: dict = {"processQueryKey": "pqk-group"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = f"{request.method} {request.url.path}"
        if route in self.fail:
            return httpx.Response(self.fail[route], json={"code": "Forbidden", "message": f"rejected {route}"})
        if route == "POST /v1.0/oauth2/accessToken":
            return httpx.Response(200, json={"accessToken": "tok-1", "expireIn": 7200})
        if route == "POST /v1.0/robot/oToMessages/batchSend":
            return httpx.Response(200, json=self.batch_response)
        if route == "POST /v1.0/robot/groupMessages/send":
            return httpx.Response(200, json=self.group_response)
        if request.url.path.startswith("/robot/sendBySession"):
            return httpx.Response(200, json={"errcode": 0, "errmsg": "ok"})
        return httpx.Response(200, json={"success": True})

    def routes(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]

    def bodies(self, route: str) -> list[dict]:
        return [
            json.loads(r.content)
            for r in self.requests
            if f"{r.method} {r.url.path}" == route and r.content
        ]

    def count(self, route: str) -> int:
        return self.routes().count(route)

    @property
    def card_routes(self) -> list[str]:
        return [r for r in self.routes() if "/card/" in r]

    @property
    def plain_routes(self) -> list[str]:
        return [r for r in self.routes() if "/robot/" in r]


@pytest.fixture
def fake_dingtalk() -> FakeDingTalk:
    return FakeDingTalk()


@pytest.fixture
def settings() -> ConnectorSettings:
    return ConnectorSettings(_env_file=None)


@pytest.fixture
def dingtalk_client(fake_dingtalk, settings) -> DingTalkClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_dingtalk.handler))
    return DingTalkClient(settings, http=http)


@pytest.fixture
def tokens(dingtalk_client) -> TokenCache:
    return TokenCache(dingtalk_client)


@pytest.fixture
def account_config() -> DingTalkAccountConfig:
    return DingTalkAccountConfig(client_id="ding-app", client_secret="s3cret")


@pytest.fixture
def account(account_config) -> ResolvedAccount:
    return ResolvedAccount(account_id="default", config=account_config, enabled=True, configured=True)


@pytest.fixture
def sender(account_config, dingtalk_client, tokens) -> DingTalkSender:
    return DingTalkSender(account_config, dingtalk_client, tokens)
