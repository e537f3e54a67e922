"""
mcpquery CLI - Interactive and one-shot query interface.

Run `mcpquery` to connect to the configured MCP servers and start chatting,
or `mcpquery "your question"` to answer a single query and exit.
"""

import asyncio
import logging
import sys
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from mcpquery import __version__
from mcpquery.core.bootstrap import Application, build_application
from mcpquery.core.orchestrator import QueryResult
from mcpquery.errors import MCPQueryError
from mcpquery.mcp.registry import descriptor_for_script
from mcpquery.validation.config import ConfigError, ServerDescriptor

console = Console()

EXIT_KEYWORDS = {"quit", "exit"}


def setup_logging(verbose: bool) -> None:
    """Route all mcpquery logging through rich."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=verbose)],
        force=True,
    )
    if not verbose:
        # httpx logs every request at INFO
        logging.getLogger("httpx").setLevel(logging.WARNING)


def render_result(result: QueryResult) -> None:
    """Print a query's trace as Markdown, plus a stats footer."""
    console.print()
    if result.full_output:
        console.print(Markdown(result.full_output))
    else:
        console.print("[dim](no output)[/dim]")
    console.print()

    stats = [f"{result.tokens_used} tokens"]
    if result.tool_outcomes:
        stats.append(f"{len(result.tool_outcomes)} tool calls")
    style = "red" if result.error else "dim"
    console.print(f"[{style}]─ {' · '.join(stats)}[/{style}]")


async def connect_and_report(app: Application) -> bool:
    """Connect the fleet and print tool counts. Returns False if nothing connected."""
    targets = [d.name for d in app.registry.descriptors.values() if d.auto_connect]
    console.print(f"[dim]Connecting to servers: {', '.join(targets) or '(none)'}[/dim]")

    await app.connect()

    counts = await app.registry.discover_tool_counts()
    for server, count in counts.items():
        console.print(f"  [green]✓[/green] {server}: {count} tools registered")

    if not app.registry.has_sessions():
        console.print("[red]Error: Failed to connect to any server[/red]")
        return False
    return True


class MCPQueryREPL:
    """
    Interactive query loop.

    Queries go to the orchestrator one at a time; sessions stay open for the
    lifetime of the loop.
    """

    SLASH_COMMANDS = ["/help", "/?", "/tools", "/servers", "/exit", "/quit", "/q"]

    def __init__(self, app: Application):
        self.app = app
        self.running = True
        self._ctrlc_count = 0

    def _get_input(self) -> str:
        """Get user input with Rich prompt prefix."""
        console.print("[bold green]Query> [/bold green]", end="")
        return input().strip()

    def _print_banner(self):
        info = Text()
        info.append(f"mcpquery v{__version__}", style="bold cyan")
        info.append("  |  ", style="dim")
        info.append(f"Model: {self.app.config.merged.agent.model}", style="dim")
        info.append("  |  ", style="dim")
        info.append(f"Servers: {', '.join(self.app.registry.connected_servers)}", style="dim")
        console.print(info)
        console.print("  [dim]Type your query, or /help for commands. 'quit' or /exit to leave.[/dim]")
        console.print()

    def _print_help(self):
        help_text = """
[bold]Commands:[/bold]
  /help, /?                Show this help
  /tools                   List tools offered to the model
  /servers                 List configured servers and their status
  /exit, /quit, /q         Exit (so does typing 'quit')

[bold]Usage:[/bold]
  Type a question. The model decides whether to call tools.
"""
        console.print(Panel(help_text.strip(), title="mcpquery Help", border_style="blue"))

    async def _print_tools(self):
        tools = await self.app.registry.list_available_tools()
        if not tools:
            console.print("[yellow]No tools available[/yellow]")
            return

        table = Table(title="Available tools", show_lines=False)
        table.add_column("Tool", style="cyan")
        table.add_column("Description")
        table.add_column("To model", justify="center")
        for tool in tools:
            sends = self.app.resolver.resolve_send_to_ai(tool.tool_id)
            table.add_row(tool.tool_id, tool.description.split("\n", 1)[0], "yes" if sends else "no")
        console.print(table)

    def _print_servers(self):
        table = Table(title="Servers")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        table.add_column("Target")
        table.add_column("Status")
        for name, descriptor in self.app.registry.descriptors.items():
            target = descriptor.url if descriptor.type == "sse" else " ".join([descriptor.command or ""] + descriptor.args)
            if self.app.registry.is_connected(name):
                status = "[green]connected[/green]"
            elif descriptor.auto_connect:
                status = "[red]failed[/red]"
            else:
                status = "[dim]disabled[/dim]"
            table.add_row(name, descriptor.type, target, status)
        console.print(table)

    async def _execute_query(self, query: str):
        with console.status("[bold blue]Thinking...[/bold blue]", spinner="dots"):
            result = await self.app.orchestrator.process_query(query)
        render_result(result)

    async def _handle_command(self, cmd: str) -> bool:
        """Handle a slash command. Returns True if should continue."""
        command = cmd.split(maxsplit=1)[0].lower()

        if command in ("/exit", "/quit", "/q"):
            self.running = False
            return False

        elif command in ("/help", "/?"):
            self._print_help()

        elif command == "/tools":
            await self._print_tools()

        elif command == "/servers":
            self._print_servers()

        else:
            console.print(f"[yellow]Unknown command: {command}[/yellow]")
            close = [c for c in self.SLASH_COMMANDS if c.startswith(command[:3])]
            if close:
                console.print(f"[dim]Did you mean: {', '.join(close)}?[/dim]")
            else:
                console.print("[dim]Type /help for available commands[/dim]")

        return True

    async def run(self):
        """Run the interactive REPL."""
        self._print_banner()

        while self.running:
            try:
                user_input = self._get_input()
                self._ctrlc_count = 0

                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if not await self._handle_command(user_input):
                        break
                    continue

                if user_input.lower() in EXIT_KEYWORDS:
                    break

                await self._execute_query(user_input)
                console.print()

            except EOFError:
                break
            except KeyboardInterrupt:
                self._ctrlc_count += 1
                if self._ctrlc_count >= 2:
                    break
                console.print("\n[dim]Press Ctrl+C again to exit, or type a command.[/dim]")
                continue
            except MCPQueryError as e:
                console.print(f"[red]Error: {e}[/red]")

        console.print("\n[dim]Closing sessions...[/dim]")


async def run_cli(query: Optional[str], servers: Optional[List[ServerDescriptor]], model: Optional[str]) -> int:
    """Connect, answer one query or run the REPL, then close every session."""
    app = build_application(model=model, servers=servers)

    try:
        if not await connect_and_report(app):
            return 1

        if query:
            with console.status("[bold blue]Working...[/bold blue]"):
                result = await app.orchestrator.process_query(query)
            render_result(result)
            return 1 if result.error else 0

        await MCPQueryREPL(app).run()
        return 0
    finally:
        await app.close()


@click.command()
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--server", "-s", type=click.Path(exists=True, dir_okay=False), help="Run a single .py/.js MCP server script instead of the configured servers")
@click.option("--model", "-m", help="Model to use, e.g. deepseek/deepseek-chat")
@click.option("--verbose", is_flag=True, help="Show connection, dispatch and model-call logs")
@click.argument("query", required=False, nargs=-1)
def cli(version: bool, server: Optional[str], model: Optional[str], verbose: bool, query: tuple) -> None:
    """
    mcpquery - Ask questions that MCP tools can help answer.

    Run without a query to start interactive mode.

    \b
    Examples:
        mcpquery                                  # Interactive chat
        mcpquery "summarize https://youtu.be/..." # Single query
        mcpquery -s ./weather_server.py           # Use one local server
    """
    if version:
        console.print(f"mcpquery v{__version__}")
        return

    setup_logging(verbose)

    servers = None
    if server:
        try:
            servers = [descriptor_for_script(server)]
        except ValueError as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)

    try:
        exit_code = asyncio.run(run_cli(" ".join(query) or None, servers, model))
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        sys.exit(130)

    if exit_code:
        sys.exit(exit_code)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
