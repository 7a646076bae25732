"""CLI commands for the DingTalk connector."""

import asyncio
import signal
import sys

import typer
from rich.console import Console
from rich.table import Table

from dingtalk_connector import __logo__, __version__

app = typer.Typer(
    name="dingtalk-connector",
    help=f"{__logo__} DingTalk connector - Stream-mode robot bridge with AI Card replies",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} dingtalk-connector v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """DingTalk connector."""
    pass


def _configure_logging(verbose: bool = False) -> None:
    from loguru import logger
    from dingtalk_connector.settings import get_settings

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else get_settings().log_level.upper())


# ============================================================================
# Gateway (Stream connection + agent workers)
# ============================================================================


@app.command()
def gateway(
    agent: str = typer.Option(
        "", "--agent", "-a", help="Agent function as 'module:function' (default: echo)"
    ),
    workers: int = typer.Option(4, "--workers", "-w", help="Concurrent agent workers"),
    http: bool = typer.Option(False, "--http", help="Also serve the HTTP API"),
    port: int = typer.Option(0, "--port", "-p", help="HTTP port (default from settings)"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Connect every enabled DingTalk account and answer messages."""
    from loguru import logger
    from dingtalk_connector.agent.runtime import BusAgentRuntime, StaticRouter, echo_agent, load_agent
    from dingtalk_connector.api.routes.dingtalk import set_channel_manager
    from dingtalk_connector.bus.queue import MessageBus
    from dingtalk_connector.channels.manager import ChannelManager
    from dingtalk_connector.config.loader import load_config
    from dingtalk_connector.settings import get_settings

    settings = get_settings()
    config = load_config()
    debug = any(
        config.resolve_dingtalk_account(account_id).config.debug
        for account_id in config.list_dingtalk_account_ids()
    )
    _configure_logging(verbose or debug)

    try:
        handler = load_agent(agent) if agent else echo_agent
    except (ImportError, ValueError) as exc:
        console.print(f"[red]Cannot load agent: {exc}[/red]")
        raise typer.Exit(1)

    console.print(f"{__logo__} Starting DingTalk gateway...")
    bus = MessageBus()
    runtime = BusAgentRuntime(
        bus,
        handler,
        router=StaticRouter(config.agents.defaults.agent_id),
        max_concurrent_workers=workers,
    )
    channels = ChannelManager(config, bus, runtime)

    if channels.enabled_channels:
        console.print(f"[green]✓[/green] Accounts enabled: {', '.join(channels.enabled_channels)}")
    else:
        console.print("[yellow]Warning: No DingTalk accounts enabled[/yellow]")
    set_channel_manager(channels)

    async def _run_http_server(bind_port: int) -> None:
        import uvicorn
        from dingtalk_connector.api.app import create_app

        server = uvicorn.Server(
            uvicorn.Config(create_app(config), host=settings.host, port=bind_port, log_level="warning")
        )
        await server.serve()

    async def run():
        _shutdown_done = False

        async def _graceful_shutdown() -> None:
            nonlocal _shutdown_done
            if _shutdown_done:
                return
            _shutdown_done = True
            console.print("\nShutting down...")
            runtime.stop()
            await channels.stop_all()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(_graceful_shutdown()))

        await channels.start_all()
        tasks = [runtime.run()]
        if http:
            bind_port = port or settings.port
            tasks.append(_run_http_server(bind_port))
            console.print(f"[green]✓[/green] HTTP API on :{bind_port}")

        try:
            await asyncio.gather(*tasks)
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        finally:
            await _graceful_shutdown()
            logger.info("Gateway stopped")

    asyncio.run(run())


# ============================================================================
# Status / send
# ============================================================================


@app.command()
def status():
    """Show configured DingTalk accounts."""
    from dingtalk_connector.channels.dingtalk.channel import probe_account
    from dingtalk_connector.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} DingTalk connector status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")

    table = Table(title="DingTalk Accounts")
    table.add_column("Account", style="cyan")
    table.add_column("Enabled", style="green")
    table.add_column("Probe", style="green")
    table.add_column("Client ID", style="yellow")
    table.add_column("DM / Group policy")

    account_ids = config.list_dingtalk_account_ids() or ["default"]
    for account_id in account_ids:
        account = config.resolve_dingtalk_account(account_id)
        probe = probe_account(account)
        client_id = account.config.client_id
        table.add_row(
            f"{account.account_id} ({account.config.name})" if account.config.name else account.account_id,
            "✓" if account.enabled else "✗",
            "✓" if probe.ok else f"[red]{probe.error}[/red]",
            f"{client_id[:10]}..." if client_id else "[dim]not configured[/dim]",
            f"{account.config.dm_policy} / {account.config.group_policy}",
        )
    console.print(table)


@app.command()
def send(
    target: str = typer.Argument(..., help="user:<userId>, group:<openConversationId> or a bare user id"),
    content: str = typer.Argument(..., help="Message content"),
    account: str = typer.Option("", "--account", help="Account id (default account if omitted)"),
    msg_type: str = typer.Option("", "--type", "-t", help="text | markdown | link | actionCard | image"),
    title: str = typer.Option("", "--title", help="Markdown title"),
    card: bool = typer.Option(True, "--card/--no-card", help="Try an AI Card first"),
    fallback: bool = typer.Option(True, "--fallback/--no-fallback", help="Fall back to a plain message"),
):
    """Send a proactive message."""
    from dingtalk_connector.channels.dingtalk.api import DingTalkClient
    from dingtalk_connector.channels.dingtalk.auth import TokenCache
    from dingtalk_connector.channels.dingtalk.send import DingTalkSender, parse_target
    from dingtalk_connector.channels.dingtalk.types import GroupTarget, ProactiveTarget, SendOptions
    from dingtalk_connector.config.loader import load_config

    _configure_logging()
    resolved = load_config().resolve_dingtalk_account(account or None)
    if not resolved.configured:
        console.print("[red]DingTalk not configured[/red]")
        raise typer.Exit(1)

    if msg_type and msg_type not in ("text", "markdown", "link", "actionCard", "image"):
        console.print(f"[red]Unknown message type: {msg_type}[/red]")
        raise typer.Exit(1)

    try:
        parsed = parse_target(target)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    if isinstance(parsed, GroupTarget):
        selector = ProactiveTarget(open_conversation_id=parsed.open_conversation_id)
    else:
        selector = ProactiveTarget(user_id=parsed.user_id)

    options = SendOptions(
        msg_type=msg_type or None,
        title=title or None,
        use_ai_card=card,
        fallback_to_normal=fallback,
    )

    async def run_once():
        client = DingTalkClient()
        try:
            sender = DingTalkSender(resolved.config, client, TokenCache(client))
            return await sender.send_proactive(selector, content, options)
        finally:
            await client.close()

    result = asyncio.run(run_once())
    if result.ok:
        via = "AI Card" if result.used_ai_card else "robot message"
        console.print(f"[green]✓[/green] Sent via {via} ({result.card_instance_id or result.process_query_key})")
    else:
        console.print(f"[red]✗ {result.error}[/red]")
        raise typer.Exit(1)


# ============================================================================
# Serve (FastAPI HTTP)
# ============================================================================


@app.command()
def serve(
    host: str = typer.Option("", "--host", help="Bind host (default from settings)"),
    port: int = typer.Option(0, "--port", "-p", help="Bind port (default from settings)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
):
    """Start the HTTP API server (FastAPI + Uvicorn) without the Stream connection."""
    import uvicorn
    from dingtalk_connector.settings import get_settings

    settings = get_settings()
    bind_host = host or settings.host
    bind_port = port or settings.port
    console.print(f"{__logo__} Starting DingTalk connector API on {bind_host}:{bind_port} ...")
    uvicorn.run(
        "dingtalk_connector.api.app:create_app",
        host=bind_host,
        port=bind_port,
        reload=reload,
        factory=True,
    )


if __name__ == "__main__":
    app()
