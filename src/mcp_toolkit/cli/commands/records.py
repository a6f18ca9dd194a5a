"""
Record management commands for the mcp-toolkit CLI.
"""

from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from mcp_toolkit.cli.helpers import handle_errors, import_records, load_records_file
from mcp_toolkit.core.models import BinaryTransport, HttpTransport, ImageTransport

console = Console()


def _describe_transport(transport) -> str:
    if isinstance(transport, ImageTransport):
        return transport.image
    if isinstance(transport, BinaryTransport):
        return " ".join([transport.path, *transport.args])
    if isinstance(transport, HttpTransport):
        return transport.url
    return ""


def record_commands(cli_context):
    """Add record management commands to the CLI."""

    @click.group("backends")
    def backends():
        """Inspect backend records."""
        pass

    @backends.command("list")
    @handle_errors
    def backends_list():
        """List all backends."""
        records = cli_context.get_storage().list_backends()
        if not records:
            console.print("[yellow]No backends configured[/yellow]")
            return

        table = Table(title="Backends")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Kind")
        table.add_column("Target")
        table.add_column("Env")
        for backend in records:
            env_keys = ", ".join(f"{var.key}{' (secret)' if var.secret else ''}" for var in backend.env)
            table.add_row(backend.id, backend.name, backend.kind.value, _describe_transport(backend.transport), env_keys)
        console.print(table)

    @click.group("bindings")
    def bindings():
        """Inspect scope bindings."""
        pass

    @bindings.command("list")
    @click.option("--scope", "-s", default=None, help="Scope to list")
    @handle_errors
    def bindings_list(scope: Optional[str]):
        """List the bindings of a scope."""
        scope = scope or cli_context.get_config().http.default_scope
        storage = cli_context.get_storage()
        names = {backend.id: backend.name for backend in storage.list_backends()}
        records = storage.list_bindings(scope)
        if not records:
            console.print(f"[yellow]No bindings in scope '{scope}'[/yellow]")
            return

        table = Table(title=f"Bindings in scope '{scope}'")
        table.add_column("ID", style="dim")
        table.add_column("Backend", style="cyan")
        table.add_column("Enabled")
        table.add_column("Overrides")
        for binding in records:
            table.add_row(
                binding.id,
                names.get(binding.backend_id, binding.backend_id),
                "[green]yes[/green]" if binding.enabled else "[red]no[/red]",
                ", ".join(var.key for var in binding.overrides),
            )
        console.print(table)

    @click.group("secret")
    def secret():
        """Manage encrypted secrets."""
        pass

    @secret.command("set")
    @click.argument("ref")
    @click.option("--value", default=None, help="Secret value (prompted when omitted)")
    @handle_errors
    def secret_set(ref: str, value: Optional[str]):
        """Encrypt and store a secret under REF."""
        if value is None:
            value = click.prompt("Secret value", hide_input=True)
        secrets = cli_context.get_secret_manager()
        cli_context.get_storage().save_secret(ref, secrets.encrypt(value))
        console.print(f"[green]✅ Stored secret '{ref}'[/green]")

    @click.command("import")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    @handle_errors
    def import_cmd(path: str):
        """Import backends, bindings and secrets from a JSON file."""
        data = load_records_file(path)
        counts = import_records(data, cli_context.get_storage(), cli_context.get_secret_manager())
        console.print(
            f"[green]✅ Imported {counts['backends']} backend(s), "
            f"{counts['bindings']} binding(s), {counts['secrets']} secret(s)[/green]"
        )

    return [backends, bindings, secret, import_cmd]
