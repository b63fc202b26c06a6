"""CLI commands for parley."""

import asyncio
import time

import typer
from rich.console import Console
from rich.table import Table

from parley import __brand__, __logo__, __version__

app = typer.Typer(
    name="parley",
    help=f"{__logo__} {__brand__} - Conversational agent runtime",
    no_args_is_help=True,
)

console = Console()


def _cli_fail(cause: str, fix: str | None = None, *, exit_code: int = 1) -> None:
    """Print a consistent CLI error block and exit."""
    console.print(f"[red]{cause}[/red]")
    if fix:
        console.print(f"[dim]Fix: {fix}[/dim]")
    raise typer.Exit(exit_code)


def _format_ms(value: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(value / 1000))


def _mask(secret: str) -> str:
    if not secret:
        return "[dim]not set[/dim]"
    return f"{secret[:4]}…" if len(secret) > 8 else "set"


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} {__brand__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-V", callback=version_callback, is_eager=True),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """parley - Conversational agent runtime."""
    from parley.config.loader import load_config
    from parley.utils.logging import setup_logging

    setup_logging("DEBUG" if verbose else load_config().log_level)


@app.command("version")
def version_command():
    """Show parley version."""
    console.print(f"{__logo__} {__brand__} v{__version__}")


# ============================================================================
# Config
# ============================================================================

config_app = typer.Typer(help="Inspect configuration")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show():
    """Show the effective configuration."""
    from parley.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} {__brand__} configuration\n")
    console.print(
        f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[yellow](defaults)[/yellow]'}"
    )
    console.print(f"Data dir: {config.data_path}")
    console.print(f"Bot user id: {config.bot_user_id or '[dim]not set[/dim]'}")

    table = Table(title="Models")
    table.add_column("Identity", style="cyan")
    table.add_column("Model")
    table.add_column("API key")
    table.add_column("API base")
    table.add_column("Fallbacks")
    for name, route in (("main", config.models.main), ("eval", config.models.eval)):
        table.add_row(
            name,
            route.model or "[red]not set[/red]",
            _mask(route.api_key),
            route.api_base or "",
            ", ".join(route.fallback_models),
        )
    console.print(table)

    console.print(
        f"Buffer: size={config.buffer.size}, window={config.buffer.base_window_s}s "
        f"(max {config.buffer.max_window_s}s)"
    )
    console.print(
        f"Scoring: respond>={config.scoring.respond_threshold:g}, "
        f"discard<{config.scoring.discard_threshold:g}"
    )
    console.print(
        f"Decision: base threshold={config.decision.base_threshold}, "
        f"respond on evaluator failure={config.decision.respond_on_evaluator_failure}"
    )
    console.print(f"Personas: {', '.join(config.personas)} (default: {config.default_persona})")


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
):
    """Write a default config file."""
    from parley.config.loader import get_config_path, save_config
    from parley.config.schema import Config

    config_path = get_config_path()
    if config_path.exists() and not force:
        _cli_fail(f"Config already exists at {config_path}.", "Pass --force to overwrite it.")
    save_config(Config(), config_path)
    console.print(f"[green]✓[/green] Wrote default config to {config_path}")


# ============================================================================
# Proactive messages
# ============================================================================

proactive_app = typer.Typer(help="Inspect and manage scheduled proactive messages")
app.add_typer(proactive_app, name="proactive")


def _scheduler():
    from parley.config.loader import load_config
    from parley.proactive.scheduler import ProactiveScheduler
    from parley.storage.proactive_rows import JsonProactiveStore

    config = load_config()
    return ProactiveScheduler(
        JsonProactiveStore(config.data_path),
        max_pending=config.proactive.max_pending_per_conversation,
    )


def _print_rows(rows, title: str) -> None:
    if not rows:
        console.print("No proactive messages.")
        return
    from parley.proactive.scheduler import summarise_content

    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Conversation")
    table.add_column("Send at")
    table.add_column("Status")
    table.add_column("Preview")
    for row in rows:
        table.add_row(
            row.public_id,
            row.conversation_key,
            _format_ms(row.scheduled_at),
            row.status,
            summarise_content(row.content),
        )
    console.print(table)


@proactive_app.command("due")
def proactive_due():
    """List scheduled messages whose send time has passed."""
    from parley.utils.helpers import now_ms

    rows = asyncio.run(_scheduler().list_due(now_ms()))
    _print_rows(rows, "Due Proactive Messages")


@proactive_app.command("pending")
def proactive_pending(
    conversation: str = typer.Argument(..., help="Conversation key"),
):
    """List scheduled messages for one conversation."""
    rows = asyncio.run(_scheduler().list_pending(conversation))
    _print_rows(rows, f"Pending for {conversation}")


@proactive_app.command("cancel")
def proactive_cancel(
    ids: list[str] = typer.Argument(..., help="Public ids to cancel"),
):
    """Cancel scheduled messages."""
    changed = asyncio.run(_scheduler().cancel(ids))
    if changed:
        console.print(f"[green]✓[/green] Cancelled {changed} message(s)")
    else:
        _cli_fail(
            "Nothing was cancelled.",
            "Ids must belong to messages that are still scheduled. Run `parley proactive due`.",
        )


# ============================================================================
# Context
# ============================================================================

context_app = typer.Typer(help="Inspect conversation context")
app.add_typer(context_app, name="context")


@context_app.command("show")
def context_show(
    conversation: str = typer.Argument(..., help="Conversation key"),
):
    """Show the current context window of a conversation."""
    from parley.agent.context import ContextStore
    from parley.config.loader import load_config
    from parley.storage.message_log import JsonlMessageStore
    from parley.utils.helpers import compact_preview

    config = load_config()
    store = ContextStore(
        JsonlMessageStore(config.data_path),
        max_messages=config.context.max_messages,
        max_age_s=config.context.max_age_seconds,
        limit_resolver=config.max_context_messages_for,
    )
    context = asyncio.run(store.get_context(conversation))
    if context is None:
        console.print(f"No recent messages for {conversation}.")
        return

    table = Table(title=f"Context for {conversation}")
    table.add_column("Time")
    table.add_column("Author", style="cyan")
    table.add_column("Message")
    table.add_column("Replied")
    for message in context.messages:
        author = f"{message.author_name} (bot)" if message.is_bot else message.author_name
        table.add_row(
            _format_ms(message.timestamp),
            author,
            compact_preview(message.content, 80),
            "[green]✓[/green]" if message.responded_to else "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
