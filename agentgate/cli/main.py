"""
CLI entry point for agentgate.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentgate import __version__
from agentgate.core.config import ConfigManager, load_config
from agentgate.core.gateway import Gateway
from agentgate.core.llm import LLMError
from agentgate.core.transport import ConsoleTransport
from agentgate.models.chat_config import ChatConfig, ChatNotFoundError, ConfigError, GatewayConfig, load_gateway_config
from agentgate.models.message import InboundMessage

console = Console()
console_err = Console(stderr=True)

CLI_USER_ID = "cli"


def _setup_logging(level: str | int) -> None:
    logging.basicConfig(level=level, format="[%(levelname)s] %(name)s: %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _load(ctx: click.Context) -> GatewayConfig:
    """Load the gateway config and provider keys, or exit with a readable error."""
    try:
        config = load_gateway_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        console_err.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    load_config()
    if not ctx.obj.get("debug"):
        _setup_logging(config.log_level.upper())
    return config


def _get_chat(config: GatewayConfig, name: str) -> ChatConfig:
    try:
        return config.get_chat(name)
    except ChatNotFoundError as e:
        console_err.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _console_gateway(config: GatewayConfig) -> Gateway:
    transport = ConsoleTransport(console=console)
    gateway = Gateway(config, transport=transport)
    transport.on_decision = lambda token, approved: gateway.resolve_confirmation(token, approved, CLI_USER_ID)
    return gateway


# =============================================================================
# Root CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="agentgate")
@click.option("--config", "config_path", default=None, help="Gateway config file (default: $AGENTGATE_CONFIG or config.yml)")
@click.option("--debug", is_flag=True, hidden=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, debug: bool):
    """
    agentgate - chat-driven LLM agent gateway.

    \b
        agentgate chat assistant         # Interactive chat in the terminal
        agentgate run assistant "hi"     # One-shot answer
        agentgate tools assistant        # Tools the chat can use
        agentgate serve                  # HTTP API
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = config_path
    if debug:
        _setup_logging(logging.DEBUG)


@cli.command()
@click.argument("chat_name")
@click.pass_context
def chat(ctx: click.Context, chat_name: str):
    """
    Chat with an agent in the terminal.

    Type /forget to clear the history and /exit to quit.
    """
    config = _load(ctx)
    chat_config = _get_chat(config, chat_name)
    # Turns are sequential here; nothing to debounce.
    params = chat_config.chat_params.model_copy(update={"debounce_seconds": 0})
    chat_config = chat_config.model_copy(update={"chat_params": params})
    conversation_id = f"cli:{chat_config.name}"

    async def loop() -> None:
        gateway = _console_gateway(config)
        console.print(Panel(f"[bold]{chat_config.name}[/bold]\n{chat_config.description}", border_style="blue"))
        try:
            while True:
                text = await asyncio.to_thread(console.input, "[bold green]you>[/bold green] ")
                text = text.strip()
                if not text:
                    continue
                if text in ("/exit", "/quit"):
                    break
                if text == "/forget":
                    await gateway.forget_chat(conversation_id)
                    console.print("[dim]History cleared[/dim]")
                    continue
                message = InboundMessage(conversation_id=conversation_id, text=text, user_id=CLI_USER_ID)
                await gateway.controller.handle(chat_config, message)
        finally:
            await gateway.close()

    try:
        asyncio.run(loop())
    except (KeyboardInterrupt, EOFError):
        console.print()


@cli.command()
@click.argument("agent_name")
@click.argument("text")
@click.pass_context
def run(ctx: click.Context, agent_name: str, text: str):
    """Answer one message and exit."""
    config = _load(ctx)
    chat_config = _get_chat(config, agent_name)

    async def once() -> str:
        gateway = _console_gateway(config)
        try:
            thread = gateway.threads.get_or_create(f"cli:{chat_config.name}")
            result = await gateway.engine.answer(
                chat_config, thread, text, transport=gateway.transport, user_id=CLI_USER_ID
            )
            return result.content
        finally:
            await gateway.close()

    try:
        content = asyncio.run(once())
    except LLMError as e:
        console_err.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(content)


@cli.command()
@click.argument("chat_name")
@click.pass_context
def tools(ctx: click.Context, chat_name: str):
    """List the tools a chat resolves to."""
    config = _load(ctx)
    chat_config = _get_chat(config, chat_name)

    async def resolve() -> list:
        gateway = Gateway(config)
        try:
            thread = gateway.threads.get_or_create(f"cli:{chat_config.name}")
            return await gateway.registry.resolve_chat_tools(chat_config, thread, CLI_USER_ID)
        finally:
            await gateway.close()

    resolved = asyncio.run(resolve())
    if not resolved:
        console.print("[dim]No tools available[/dim]")
        return

    table = Table(title=f"Tools for {chat_config.name}")
    table.add_column("Name", style="cyan")
    table.add_column("Kind")
    table.add_column("Description")
    for tool in resolved:
        table.add_row(tool.name, tool.kind.value, (tool.description or "")[:80])
    console.print(table)


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", default=None, type=int, help="Port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None):
    """Run the HTTP API."""
    import uvicorn

    from agentgate.core.gateway import set_gateway
    from agentgate.server.app import create_app

    config = _load(ctx)
    set_gateway(Gateway(config))
    host = host or config.http.host
    port = port or config.http.port
    console.print(f"[green]agentgate[/green] listening on http://{host}:{port}")
    uvicorn.run(create_app(), host=host, port=port, log_level="debug" if ctx.obj.get("debug") else "info")


# =============================================================================
# Remote endpoint authorization
# =============================================================================


@cli.group()
def auth():
    """Manage stored OAuth state for remote tool endpoints."""
    pass


@auth.command("reset")
@click.argument("endpoint")
@click.option(
    "--scope",
    type=click.Choice(["all", "client", "tokens", "verifier"]),
    default="all",
    show_default=True,
    help="Which part of the stored state to remove",
)
@click.pass_context
def auth_reset(ctx: click.Context, endpoint: str, scope: str):
    """Remove stored authorization state for ENDPOINT."""
    config = _load(ctx)
    gateway = Gateway(config)
    store = gateway.sessions.credential_store(endpoint, config.mcp_servers.get(endpoint))
    removed = store.invalidate(scope)
    if removed:
        console.print(f"[green]✓[/green] Removed {', '.join(removed)} for {endpoint}")
    else:
        console.print(f"[yellow]Nothing stored for[/yellow] {endpoint}")


# =============================================================================
# Provider keys
# =============================================================================


@cli.group()
def config():
    """Manage LLM provider API keys."""
    pass


@config.command("set")
@click.argument("key_name")
@click.option(
    "--value",
    "-v",
    help="Set value directly (use with caution - visible in shell history)",
)
def config_set(key_name: str, value: str | None):
    """
    Store an API key.

    \b
    Examples:
        agentgate config set OPENAI_API_KEY     # Prompted, hidden input
        agentgate config set MY_KEY -v "value"  # Set directly (not recommended)
    """
    if not value:
        value = click.prompt(f"Value for {key_name}", hide_input=True, default="", show_default=False)
    if not value:
        console.print("[dim]Cancelled[/dim]")
        return
    try:
        ConfigManager().set(key_name, value)
    except ValueError as e:
        console_err.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Saved {key_name}")


@config.command("list")
def config_list():
    """List stored API keys."""
    ConfigManager().show_status()


@config.command("delete")
@click.argument("key_name")
def config_delete(key_name: str):
    """Delete a stored API key."""
    if ConfigManager().delete(key_name):
        console.print(f"[green]✓[/green] Deleted {key_name}")
    else:
        console.print(f"[yellow]Key not found:[/yellow] {key_name}")


@config.command("import")
@click.argument("file_path", type=click.Path(exists=True))
def config_import(file_path: str):
    """Import API keys from a .env file."""
    count = ConfigManager().set_from_file(file_path)
    console.print(f"[green]✓[/green] Imported {count} key(s)")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
