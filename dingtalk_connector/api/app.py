"""FastAPI application factory with lifespan for the DingTalk connector."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dingtalk_connector import __version__
from dingtalk_connector.channels.dingtalk.api import DingTalkClient
from dingtalk_connector.channels.dingtalk.auth import TokenCache
from dingtalk_connector.config.loader import load_config
from dingtalk_connector.config.schema import Config
from dingtalk_connector.settings import get_settings


def create_app(config: Config | None = None, client: DingTalkClient | None = None) -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup: shared DingTalk client + token cache.  Shutdown: close it."""
        app.state.config = config or load_config()
        app.state.client = client or DingTalkClient(settings)
        app.state.tokens = TokenCache(app.state.client)
        yield
        await app.state.client.close()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
    )

    # ── mount routers ──
    from dingtalk_connector.api.routes import dingtalk, health

    app.include_router(health.router)
    app.include_router(dingtalk.router, prefix="/dingtalk", tags=["dingtalk"])

    return app
