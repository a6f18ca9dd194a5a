"""
Gateway commands for the mcp-toolkit CLI.

Runs the gateway over stdio or HTTP, inspects the aggregated catalog of a
scope, and prints the client configuration that launches the gateway.
"""

import asyncio
import json
import shutil
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from mcp_toolkit.cli.helpers import handle_errors
from mcp_toolkit.core.proxy.server import HttpGatewayServer, StdioServer

console = Console()
err_console = Console(stderr=True)


def gateway_command_line(scope: Optional[str] = None) -> dict:
    """Client configuration entry that launches ``mcp-toolkit serve``."""
    executable = shutil.which("mcp-toolkit")
    if executable:
        command, args = executable, ["serve"]
    else:
        command, args = sys.executable, ["-m", "mcp_toolkit.cli.main", "serve"]
    if scope:
        args.extend(["--scope", scope])
    return {"command": command, "args": args}


def serve_commands(cli_context):
    """Add gateway commands to the CLI."""

    @click.command("serve")
    @click.option("--scope", "-s", default=None, help="Scope whose bindings are served")
    @handle_errors
    def serve(scope: Optional[str]):
        """Serve the gateway on stdin/stdout."""
        config = cli_context.get_config()
        scope = scope or config.http.default_scope
        gateway = cli_context.create_gateway()

        async def run_stdio():
            async with gateway:
                await StdioServer(gateway, scope).run()

        try:
            asyncio.run(run_stdio())
        except KeyboardInterrupt:
            err_console.print("[yellow]Gateway stopped[/yellow]")

    @click.command("serve-http")
    @click.option("--host", "-h", default=None, help="Bind address")
    @click.option("--port", "-p", type=int, default=None, help="Bind port")
    @click.option("--scope", "-s", default=None, help="Scope served by POST /mcp")
    @handle_errors
    def serve_http(host: Optional[str], port: Optional[int], scope: Optional[str]):
        """Serve the gateway over HTTP (POST /mcp, POST /mcp/<scope>)."""
        config = cli_context.get_config()
        updates = {
            key: value
            for key, value in {"host": host, "port": port, "default_scope": scope}.items()
            if value is not None
        }
        http_config = config.http.model_copy(update=updates)
        server = HttpGatewayServer(cli_context.create_gateway(), http_config)

        err_console.print(f"[green]Gateway listening on http://{http_config.host}:{http_config.port}/mcp[/green]")
        try:
            asyncio.run(server.run_forever())
        except KeyboardInterrupt:
            err_console.print("[yellow]Gateway stopped[/yellow]")

    @click.command("tools")
    @click.option("--scope", "-s", default=None, help="Scope to aggregate")
    @click.option(
        "--output-format", "-o",
        type=click.Choice(["table", "json"], case_sensitive=False),
        default="table",
        help="Output format"
    )
    @handle_errors
    def tools(scope: Optional[str], output_format: str):
        """List the aggregated tool catalog of a scope."""
        config = cli_context.get_config()
        scope = scope or config.http.default_scope
        gateway = cli_context.create_gateway()

        async def collect():
            async with gateway:
                return await gateway.list_tools(scope)

        result = asyncio.run(collect())

        if output_format == "json":
            console.print_json(json.dumps({"tools": result.to_wire(), "failures": result.failures}))
            return

        if not result.tools:
            console.print(f"[yellow]No tools available in scope '{scope}'[/yellow]")
        else:
            table = Table(title=f"Tools in scope '{scope}'")
            table.add_column("Name", style="cyan")
            table.add_column("Description")
            for tool in result.tools:
                table.add_row(tool.name, tool.description)
            console.print(table)

        for backend_name, reason in result.failures.items():
            console.print(f"[yellow]⚠ {backend_name}: {reason}[/yellow]")

    @click.command("client-config")
    @click.option("--scope", "-s", default=None, help="Scope passed to the gateway")
    @click.option("--name", default="mcp-toolkit", help="Server name in the client configuration")
    @handle_errors
    def client_config(scope: Optional[str], name: str):
        """Print the mcpServers entry that launches this gateway."""
        click.echo(json.dumps({"mcpServers": {name: gateway_command_line(scope)}}, indent=2))

    return [serve, serve_http, tools, client_config]
