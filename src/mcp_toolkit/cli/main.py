"""
Main CLI interface for mcp-toolkit.

Runs the gateway over stdio or HTTP and manages the backend, binding and
secret records it serves.
"""

import sys
from typing import List, Optional

import click
from rich.console import Console

from mcp_toolkit import __version__
from mcp_toolkit.core.exceptions import ToolkitError
from mcp_toolkit.core.proxy.gateway import Gateway
from mcp_toolkit.core.secrets import SecretManager, create_secret_manager
from mcp_toolkit.core.storage import SQLiteStorage
from mcp_toolkit.utils.config import ToolkitConfig, reload_config
from mcp_toolkit.utils.logging import get_logger, setup_logging

from mcp_toolkit.cli.commands.records import record_commands
from mcp_toolkit.cli.commands.serve import serve_commands

console = Console()
logger = get_logger(__name__)


class CLIContext:
    """CLI context for passing state between commands."""

    def __init__(self):
        self.reset()

    def reset(self, config_file: Optional[str] = None, debug: bool = False) -> None:
        self.config_file = config_file
        self.debug = debug
        self.config: Optional[ToolkitConfig] = None
        self.storage: Optional[SQLiteStorage] = None
        self.secrets: Optional[SecretManager] = None

    def get_config(self) -> ToolkitConfig:
        if self.config is None:
            config_files: Optional[List[str]] = None
            if self.config_file:
                config_files = [
                    "/etc/mcp-toolkit/config.toml",
                    "~/.config/mcp-toolkit/config.toml",
                    "./.mcp-toolkit.toml",
                    self.config_file,
                ]
            overrides = {"debug": True} if self.debug else {}
            self.config = reload_config(config_files=config_files, **overrides)
        return self.config

    def get_storage(self) -> SQLiteStorage:
        """Open the record database. Fatal for the command if it fails."""
        if self.storage is None:
            self.storage = SQLiteStorage(self.get_config().database_path)
        return self.storage

    def get_secret_manager(self) -> SecretManager:
        """Load the master key. Fatal for the command if it fails."""
        if self.secrets is None:
            self.secrets = create_secret_manager(self.get_config())
        return self.secrets

    def create_gateway(self) -> Gateway:
        return Gateway(self.get_storage(), self.get_secret_manager(), self.get_config())

    def setup_logging(self) -> None:
        config = self.get_config()
        log_config = config.logging
        console_level = "DEBUG" if self.debug else log_config.console_level
        setup_logging(
            enabled=log_config.enabled,
            level=log_config.level,
            console_level=console_level,
            log_file=config.get_log_file(),
            format_type=log_config.format_type,
            enable_rich=log_config.enable_rich,
            max_bytes=log_config.max_bytes,
            backup_count=log_config.backup_count,
            suppress_http=log_config.suppress_http,
            force=True,
        )


# Global CLI context
cli_context = CLIContext()


@click.group()
@click.option(
    "--debug", "-d",
    is_flag=True,
    help="Enable debug logging"
)
@click.option(
    "--config", "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Additional TOML configuration file"
)
@click.version_option(version=__version__, prog_name="mcp-toolkit")
def cli(debug: bool, config_file: Optional[str]):
    """
    MCP gateway multiplexing many tool servers behind one endpoint.

    Tools from every backend bound to a scope are exposed as
    <backend>__<tool> and each call is routed to the backend that owns it.
    """
    cli_context.reset(config_file=config_file, debug=debug)
    try:
        cli_context.setup_logging()
    except ToolkitError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


def register_commands() -> None:
    for cmd in serve_commands(cli_context):
        cli.add_command(cmd)

    for cmd in record_commands(cli_context):
        cli.add_command(cmd)


register_commands()


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
