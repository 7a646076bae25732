"""DingTalkClient – thin async wrapper over the DingTalk open APIs.

Covers only what the connector needs: OAuth tokens, AI Card instances
(create / deliver / update / streaming), robot batch and group sends, and
session-webhook replies.  Every failure surfaces as ``DingTalkError``.
"""

from __future__ import annotations

from typing import Any

import httpx

from dingtalk_connector.settings import ConnectorSettings, get_settings


class DingTalkError(RuntimeError):
    """Wrapper for all DingTalk API errors."""


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.text[:500]}"
    if isinstance(data, dict):
        msg = data.get("message") or data.get("errmsg")
        if msg:
            return str(msg)
    return f"HTTP {resp.status_code}: {resp.text[:500]}"


class DingTalkClient:
    """Async gateway to the DingTalk endpoints used by the connector."""

    def __init__(
        self,
        settings: ConnectorSettings | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        s = settings or get_settings()
        self._api = s.api_base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=s.http_timeout_seconds)

    # ── low-level request ────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["x-acs-dingtalk-access-token"] = token
        try:
            resp = await self._http.request(method, url, json=body, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise DingTalkError(f"{method} {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise DingTalkError(_error_message(resp))
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise DingTalkError(f"unexpected response body: {resp.text[:200]}") from exc
        if not isinstance(data, dict):
            raise DingTalkError("unexpected response shape")
        errcode = data.get("errcode")
        if errcode not in (None, 0, "0"):
            raise DingTalkError(f"API error {errcode}: {data.get('errmsg', '')}")
        return data

    # ── auth ─────────────────────────────────────────────────────────────

    async def get_access_token(self, app_key: str, app_secret: str) -> tuple[str, int]:
        """POST /v1.0/oauth2/accessToken → (token, expire_in seconds)."""
        data = await self._request(
            "POST",
            f"{self._api}/v1.0/oauth2/accessToken",
            body={"appKey": app_key, "appSecret": app_secret},
        )
        token = data.get("accessToken")
        if not token:
            raise DingTalkError("accessToken missing from response")
        return str(token), int(data.get("expireIn") or 7200)

    # ── AI card ──────────────────────────────────────────────────────────

    async def create_card_instance(self, token: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"{self._api}/v1.0/card/instances", token=token, body=body)

    async def deliver_card(self, token: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", f"{self._api}/v1.0/card/instances/deliver", token=token, body=body
        )

    async def update_card_instance(self, token: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"{self._api}/v1.0/card/instances", token=token, body=body)

    async def stream_card(self, token: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PUT", f"{self._api}/v1.0/card/streaming", token=token, body=body)

    # ── robot messages ───────────────────────────────────────────────────

    async def batch_send_to_users(self, token: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", f"{self._api}/v1.0/robot/oToMessages/batchSend", token=token, body=body
        )

    async def send_to_group(self, token: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", f"{self._api}/v1.0/robot/groupMessages/send", token=token, body=body
        )

    async def post_session_webhook(
        self, webhook_url: str, token: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request("POST", webhook_url, token=token, body=body)

    # ── lifecycle ────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._http.aclose()
