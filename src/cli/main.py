"""CLI entry point and base commands.

Provides the main CLI application with commands for:
- ask: Send a query and stream the answer live
- show: Print a conversation's messages
- version: Show version information
"""

import asyncio
from typing import Annotated

import typer
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from src.logging_config import configure_logging

app = typer.Typer(
    name="chatsync",
    help="Streaming chat client with conversation reconciliation",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

__version__ = "0.1.0"


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure logging before any command runs."""
    configure_logging("DEBUG" if verbose else None)


@app.command()
def ask(
    conversation_id: Annotated[str, typer.Argument(help="Conversation to send the query to")],
    query: Annotated[str, typer.Argument(help="Query text")],
    plain_chat: Annotated[
        bool,
        typer.Option("--plain-chat", help="Use plain chat completions instead of the RAG path"),
    ] = False,
) -> None:
    """Send a query and stream the assistant's answer.

    Examples:
        chatsync ask 3f2c... "What is ROAS?"
        chatsync ask 3f2c... "Summarise last week" --plain-chat
    """
    result = asyncio.run(_ask(conversation_id, query, use_rag_path=not plain_chat))

    if result.error is not None:
        console.print(f"[red]❌ {type(result.error).__name__}: {result.error}[/red]")
        raise typer.Exit(code=1)

    console.print(
        f"[dim]Settled as {result.outcome} (message {result.effective_id}, "
        f"{result.skipped_records} malformed records skipped)[/dim]"
    )


async def _ask(conversation_id: str, query: str, *, use_rag_path: bool):
    """Run one exchange, rendering partial content as it arrives."""
    from src.clients import ChatAPIClient
    from src.streaming import StreamingChatEngine

    console.print(f"[bold cyan]You:[/bold cyan] {query}\n")

    async with ChatAPIClient() as client:
        engine = StreamingChatEngine(client, use_rag_path=use_rag_path)
        with Live(Markdown(""), console=console, refresh_per_second=12) as live:

            def render(content: str, message_id: str) -> None:
                live.update(Markdown(content or "…"))

            return await engine.send_and_wait(conversation_id, query, render)


@app.command()
def show(
    conversation_id: Annotated[str, typer.Argument(help="Conversation to display")],
) -> None:
    """Fetch a conversation and print its messages."""
    from src.exceptions import ConversationFetchError

    try:
        snapshot = asyncio.run(_fetch(conversation_id))
    except ConversationFetchError as e:
        console.print(f"[red]❌ Could not fetch conversation: {e}[/red]")
        raise typer.Exit(code=1) from e

    title = snapshot.conversation.title or snapshot.conversation.id
    table = Table(title=title, show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Content")
    table.add_column("Created", style="dim")

    for message in snapshot.messages:
        table.add_row(
            message.id,
            message.role.value,
            message.content,
            message.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


async def _fetch(conversation_id: str):
    from src.clients import ChatAPIClient

    async with ChatAPIClient() as client:
        return await client.fetch_conversation(conversation_id)


@app.command()
def version() -> None:
    """Show chatsync version information."""
    console.print(
        Panel(
            f"[bold]chatsync[/bold] v{__version__}\n"
            "Streaming chat client with conversation reconciliation",
            title="Version",
            border_style="blue",
        )
    )


# Entry point for: python -m src.cli.main
if __name__ == "__main__":
    app()
