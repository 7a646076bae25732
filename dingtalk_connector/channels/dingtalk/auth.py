"""Access-token cache for DingTalk robot applications."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from loguru import logger

from dingtalk_connector.channels.dingtalk.api import DingTalkClient, DingTalkError
from dingtalk_connector.config.schema import DingTalkAccountConfig

_REFRESH_MARGIN_SECONDS = 60


class TokenCache:
    """Caches one bearer token per client id until 60s before it expires."""

    def __init__(self, client: DingTalkClient, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock
        self._tokens: dict[str, tuple[str, float]] = {}  # client_id -> (token, expires_at)
        self._lock = asyncio.Lock()

    async def get_access_token(self, config: DingTalkAccountConfig) -> str:
        if not config.client_id or not config.client_secret:
            raise DingTalkError("DingTalk clientId / clientSecret not configured")

        cached = self._tokens.get(config.client_id)
        if cached and cached[1] > self._clock() + _REFRESH_MARGIN_SECONDS:
            return cached[0]

        async with self._lock:
            # Another turn may have refreshed while we waited.
            cached = self._tokens.get(config.client_id)
            now = self._clock()
            if cached and cached[1] > now + _REFRESH_MARGIN_SECONDS:
                return cached[0]
            token, expire_in = await self._client.get_access_token(
                config.client_id, config.client_secret
            )
            self._tokens[config.client_id] = (token, now + expire_in)
            logger.debug(f"[DingTalk] access token refreshed for {config.client_id}")
            return token
