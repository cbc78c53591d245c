"""
Chat Bridge Main Entry Point

Terminal front end for the connection engine.
"""

import argparse
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from chat_bridge.client.connection_manager import ConnectionManager
from chat_bridge.client.events import ClientEvent, EventType
from chat_bridge.shared.config import ClientConfig, load_client_config
from chat_bridge.shared.constants import (
    DISCONNECT_COMMAND,
    HELP_COMMAND,
    QUIT_COMMAND,
    REFRESH_COMMAND,
)
from chat_bridge.shared.exceptions import ConfigurationError
from chat_bridge.shared.logging_config import setup_logging
from chat_bridge.shared.models import ServerDescriptor


logger = logging.getLogger(__name__)

HELP_TEXT = (
    f"{QUIT_COMMAND}        leave the client\n"
    f"{DISCONNECT_COMMAND}  leave the current server\n"
    f"{REFRESH_COMMAND}     reload the server list\n"
    f"{HELP_COMMAND}        show this help"
)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chat-bridge",
        description="Chat client with direct and HTTP relay connectivity",
    )
    parser.add_argument("discovery_url", nargs="?", help="Discovery service base URL")
    parser.add_argument("relay_url", nargs="?", help="Relay service base URL")
    parser.add_argument("--config", dest="config_path", help="Path to a JSON or YAML config file")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Logging level (default: WARNING)")
    parser.add_argument("--log-file", help="Also write logs to this file")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ClientConfig:
    """
    Build the client configuration from file, environment and arguments.

    Positional URLs take precedence over every other source.
    """
    config = load_client_config(args.config_path)
    if args.discovery_url:
        config.discovery_url = args.discovery_url.rstrip("/")
    if args.relay_url:
        config.relay_url = args.relay_url.rstrip("/")
    config.validate()
    return config


def message_style(message: str) -> str:
    if message.startswith("[Error]"):
        return "bold red"
    if message.startswith("[System]"):
        return "cyan"
    if message.startswith("[Control from Server]"):
        return "magenta"
    return ""


def render_server_table(servers: List[ServerDescriptor]) -> Table:
    table = Table(title="Available Servers")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Address")
    table.add_column("Methods", style="green")
    for index, server in enumerate(servers, start=1):
        table.add_row(str(index), server.display_name, server.address,
                      ", ".join(sorted(server.supported_methods)))
    return table


class ConsoleView:
    """Prints engine events to the console as they arrive."""

    def __init__(self, console: Console, manager: ConnectionManager) -> None:
        self.console = console
        manager.events.subscribe(EventType.MESSAGE, self.on_message)
        manager.events.subscribe(EventType.STATUS, self.on_status)

    def on_message(self, event: ClientEvent) -> None:
        # Text keeps the bracketed prefixes from being read as markup
        self.console.print(Text(event.payload, style=message_style(event.payload)))

    def on_status(self, event: ClientEvent) -> None:
        self.console.print(Text(f"Status: {event.payload}", style="dim"))


def choose_server(console: Console, servers: List[ServerDescriptor]) -> Optional[ServerDescriptor]:
    """Ask the user to pick a server; returns None to refresh the list."""
    if not servers:
        Prompt.ask("[yellow]No servers available. Press Enter to refresh[/yellow]", default="")
        return None

    console.print(render_server_table(servers))
    choices = [str(i) for i in range(1, len(servers) + 1)] + ["r"]
    choice = Prompt.ask("[cyan]Select a server (r to refresh)[/cyan]", choices=choices, default="1")
    if choice == "r":
        return None
    return servers[int(choice) - 1]


def chat_loop(console: Console, manager: ConnectionManager) -> bool:
    """
    Read and send lines until the session ends.

    Returns:
        False if the user asked to quit.
    """
    while manager.is_connected:
        line = console.input()
        command = line.strip().lower()

        if command == QUIT_COMMAND:
            return False
        if command == DISCONNECT_COMMAND:
            manager.disconnect()
            return True
        if command == REFRESH_COMMAND:
            console.print("[yellow]Disconnect first to change servers.[/yellow]")
            continue
        if command == HELP_COMMAND:
            console.print(Panel(HELP_TEXT, title="Commands", border_style="cyan"))
            continue
        if not manager.is_connected:
            break
        manager.send(line)
    return True


def run(console: Console, manager: ConnectionManager) -> None:
    """Interactive session: pick a server, connect, chat, repeat."""
    ConsoleView(console, manager)
    nickname = "Guest"

    while True:
        future = manager.fetch_servers()
        if future is None:
            return
        servers = future.result()

        server = choose_server(console, servers)
        if server is None:
            continue

        nickname = Prompt.ask("[cyan]Enter your nickname[/cyan]", default=nickname)
        future = manager.connect(server, nickname)
        if future is None or not future.result():
            continue

        console.print(f"[green]Type messages and press Enter. {HELP_COMMAND} lists commands.[/green]")
        if not chat_loop(console, manager):
            return


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the chat bridge client."""
    console = Console()
    args = parse_args(argv)
    setup_logging(level=args.log_level, log_file=args.log_file)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error: {e}[/bold red]")
        sys.exit(1)

    console.print(Panel("[bold cyan]Welcome to Chat Bridge![/bold cyan]", border_style="cyan"))

    manager = ConnectionManager(config)
    try:
        run(console, manager)
    except (KeyboardInterrupt, EOFError):
        console.print("\n[bold blue]Exiting.[/bold blue]")
    except Exception as e:
        console.print(f"[bold red]An unexpected error occurred: {e}[/bold red]")
        logger.exception("Client error")
        sys.exit(1)
    finally:
        manager.shutdown()


if __name__ == "__main__":
    main()
