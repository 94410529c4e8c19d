"""Command line entry point: ``taskpilot run | tools | serve``."""

import asyncio
from pathlib import Path

import click

from .agent import CompletionClient, ConsoleOperator, TaskLoop
from .errors import BackendConnectionError, CompletionServiceError
from .logs import setup_logging
from .services.learning_store import close_learning_store, get_learning_store_async
from .services.router import MultiBackendRouter
from .settings import get_settings, load_server_configs


def _router(config: Path | None) -> MultiBackendRouter:
    settings = get_settings()
    path = config or settings.mcp_servers_config
    try:
        servers = load_server_configs(path)
    except (FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e)) from e
    return MultiBackendRouter(
        servers,
        call_timeout=settings.tool_call_timeout_seconds,
        connect_timeout=settings.backend_connect_timeout_seconds,
    )


async def _run_session(task: str, config: Path | None) -> None:
    settings = get_settings()
    router = _router(config)
    await router.initialize()
    store = await get_learning_store_async()
    try:
        loop = TaskLoop(
            router,
            CompletionClient(settings),
            ConsoleOperator(),
            store=store,
            settings=settings,
        )
        await loop.run(task)
    finally:
        await router.close()
        await close_learning_store()


async def _list_tools(config: Path | None) -> None:
    async with _router(config) as router:
        for tool in router.tools:
            click.echo(f"{tool.name}\t[{router.backend_for(tool.name)}]\t{tool.description or ''}")


@click.group()
@click.version_option(version="0.1.0", prog_name="taskpilot")
def cli() -> None:
    """Operator-gated AI agent runner over MCP tool backends."""


@cli.command()
@click.option("--task", "-t", help="Task description. Prompted for when omitted.")
@click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False, path_type=Path),
    help="MCP servers JSON config (defaults to MCP_SERVERS_CONFIG).",
)
def run(task: str | None, config: Path | None) -> None:
    """Run one interactive task session."""
    settings = get_settings()
    setup_logging("agent.log", level=settings.log_level, logs_dir=settings.log_dir)
    if task is None:
        click.echo(">>> [assistant]")
        click.echo(
            "    How can I help you today? Include "
            f"{settings.history_marker} to search similar tasks from the past."
        )
        task = click.prompt("", prompt_suffix="> ", default="", show_default=False)
    task = (task or "").strip()
    if not task:
        click.echo("I need a task description to get started. Please try again.", err=True)
        raise SystemExit(1)

    try:
        asyncio.run(_run_session(task, config))
    except (BackendConnectionError, CompletionServiceError) as e:
        raise click.ClickException(str(e)) from e
    click.echo("Thank you for using the assistant. Goodbye!")


@cli.command()
@click.option("--config", "-c", type=click.Path(dir_okay=False, path_type=Path))
def tools(config: Path | None) -> None:
    """Start the backends and list the merged tool catalog."""
    try:
        asyncio.run(_list_tools(config))
    except BackendConnectionError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
def serve() -> None:
    """Run the HTTP/WebSocket server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("taskpilot.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    cli()
