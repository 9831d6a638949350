"""CLI commands for fleetgate."""

import asyncio
import json
import sys
from typing import Any

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from fleetgate import __version__, __logo__

app = typer.Typer(
    name="fleetgate",
    help=f"{__logo__} fleetgate - run commands on remote nodes",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)

# Exit code used after Ctrl+C
EXIT_INTERRUPTED = 130


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} fleetgate v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
):
    """fleetgate - run commands on remote nodes."""
    pass


def _configure_logging(config: Any, verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else config.logging.level)
    if config.log_path:
        logger.add(config.log_path, level="DEBUG", rotation="10 MB")


def _load(verbose: bool) -> Any:
    from fleetgate.config.loader import load_config

    config = load_config()
    _configure_logging(config, verbose)
    return config


def _run_async(coro: Any) -> Any:
    """Run a coroutine, mapping failures to exit codes."""
    from fleetgate.gateway.errors import GatewayError
    from fleetgate.nodes.errors import DispatchError

    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        err_console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(EXIT_INTERRUPTED)
    except (DispatchError, GatewayError) as e:
        err_console.print(f"[red]Error ({type(e).__name__}):[/red] {e.message}")
        raise typer.Exit(1)


def _report(result: Any, json_output: bool) -> None:
    if json_output:
        console.print(json.dumps(result.to_dict(), indent=2))
    else:
        if result.stdout:
            sys.stdout.write(result.stdout)
        if result.stderr:
            sys.stderr.write(result.stderr)
        if result.timed_out:
            err_console.print("[red]Command timed out[/red]")

    if not result.success:
        code = result.exit_code if isinstance(result.exit_code, int) and result.exit_code > 0 else 1
        raise typer.Exit(code)


async def _dispatch(config: Any, request: Any, ask: str | None) -> Any:
    from fleetgate.gateway.client import create_rpc_client
    from fleetgate.nodes.dispatcher import DispatchOptions, NodeDispatcher

    options = DispatchOptions(
        invoke_timeout_ms=config.nodes.invoke_timeout_ms,
        approval_timeout_ms=config.nodes.approval_timeout_ms,
        invoke_retries=config.nodes.invoke_retries,
    )
    async with create_rpc_client(config) as client:
        dispatcher = NodeDispatcher(client, options=options)
        return await dispatcher.dispatch(request, ask=ask or config.nodes.ask)


def _resolve_node(config: Any, node: str) -> str:
    node_id = node or config.nodes.default_node
    if not node_id:
        err_console.print("[red]Error: --node is required (or set nodes.defaultNode)[/red]")
        raise typer.Exit(1)
    return node_id


# ============================================================================
# Nodes Commands
# ============================================================================

nodes_app = typer.Typer(help="Run commands on remote nodes")
app.add_typer(nodes_app, name="nodes")


@nodes_app.command("list")
def nodes_list(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List nodes known to the gateway."""
    from fleetgate.gateway.client import create_rpc_client
    from fleetgate.nodes.registry import NodeRegistry

    config = _load(verbose)

    async def fetch():
        async with create_rpc_client(config) as client:
            return await NodeRegistry(client).list_nodes()

    nodes = _run_async(fetch())

    if json_output:
        console.print(json.dumps([n.to_dict() for n in nodes], indent=2))
        return

    if not nodes:
        console.print("No nodes paired.")
        return

    table = Table(title="Nodes")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Platform")
    table.add_column("Connected")
    table.add_column("Commands", style="dim")

    for node in nodes:
        commands = ", ".join(sorted(node.commands)) if node.commands is not None else "(not declared)"
        table.add_row(
            node.node_id,
            node.display_name,
            node.platform.value,
            "[green]yes[/green]" if node.connected else "[dim]no[/dim]",
            commands,
        )

    console.print(table)


@nodes_app.command("run")
def nodes_run(
    command: list[str] = typer.Argument(..., help="Command and arguments (use -- before flags)"),
    node: str = typer.Option("", "--node", "-n", help="Target node id"),
    ask: str = typer.Option(None, "--ask", help="Ask mode: off, on-miss, always"),
    agent: str = typer.Option(None, "--agent", "-a", help="Agent id (default from config)"),
    raw: str = typer.Option(None, "--raw", help="Raw command string shown for approval; must tokenize to the command"),
    timeout: int = typer.Option(None, "--timeout", "-t", help="Invoke timeout in milliseconds"),
    json_output: bool = typer.Option(False, "--json", help="Output result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Run a shell command on a node."""
    from fleetgate.nodes.protocol import AskMode, CommandRequest

    if ask is not None and ask not in {mode.value for mode in AskMode}:
        err_console.print(f"[red]Error: invalid --ask value '{ask}' (off, on-miss, always)[/red]")
        raise typer.Exit(1)

    config = _load(verbose)
    if timeout is not None:
        config.nodes.invoke_timeout_ms = timeout
    request = CommandRequest(
        node_id=_resolve_node(config, node),
        command="system.run",
        argv=tuple(command),
        raw_command=raw,
        agent_id=agent or config.nodes.default_agent_id,
    )
    result = _run_async(_dispatch(config, request, ask))
    _report(result, json_output)


@nodes_app.command("screen-record")
def nodes_screen_record(
    node: str = typer.Option("", "--node", "-n", help="Target node id"),
    duration_ms: int = typer.Option(None, "--duration-ms", help="Duration in milliseconds"),
    duration: str = typer.Option(None, "--duration", "-d", help="Duration like 10s or 1m"),
    json_output: bool = typer.Option(False, "--json", help="Output result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a node's screen."""
    from fleetgate.nodes.protocol import CommandRequest

    config = _load(verbose)
    params: dict[str, Any] = {}
    if duration_ms is not None:
        params["durationMs"] = duration_ms
    elif duration is not None:
        params["duration"] = duration

    request = CommandRequest(
        node_id=_resolve_node(config, node),
        command="screen.record",
        agent_id=config.nodes.default_agent_id,
        params=params,
    )
    result = _run_async(_dispatch(config, request, None))
    _report(result, json_output)


@nodes_app.command("invoke")
def nodes_invoke(
    node_command: str = typer.Argument(..., help="Node command name (e.g. system.which)"),
    node: str = typer.Option("", "--node", "-n", help="Target node id"),
    params: str = typer.Option("{}", "--params", "-p", help="Command params as JSON"),
    json_output: bool = typer.Option(False, "--json", help="Output result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Invoke any node command."""
    from fleetgate.nodes.protocol import CommandRequest

    try:
        parsed = json.loads(params)
    except json.JSONDecodeError as e:
        err_console.print(f"[red]Error: --params is not valid JSON: {e}[/red]")
        raise typer.Exit(1)
    if not isinstance(parsed, dict):
        err_console.print("[red]Error: --params must be a JSON object[/red]")
        raise typer.Exit(1)

    config = _load(verbose)
    request = CommandRequest(
        node_id=_resolve_node(config, node),
        command=node_command,
        agent_id=config.nodes.default_agent_id,
        params=parsed,
    )
    result = _run_async(_dispatch(config, request, None))
    _report(result, json_output)


if __name__ == "__main__":
    app()
