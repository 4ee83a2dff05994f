"""
CLI interface for AI Stream Meter.

Provides command-line access to token estimation, stream state and
recorded usage.
"""

import logging
import sqlite3
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_stream_meter.config.loader import MeterConfig, load_meter_config
from ai_stream_meter.core.token_counter import estimate_tokens
from ai_stream_meter.storage.db import DEFAULT_DB_PATH
from ai_stream_meter.storage.kv import SQLiteKeyValueStore
from ai_stream_meter.storage.repository import fetch_recent_usage_records, initialize_schema
from ai_stream_meter.streaming.state import StreamStateManager

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML meter config")


def _load_config(config_path: Optional[str]) -> MeterConfig:
    if config_path is None:
        return MeterConfig.default()
    return load_meter_config(config_path)


def _state_manager(db_path: str, config_path: Optional[str]) -> StreamStateManager:
    return StreamStateManager(SQLiteKeyValueStore(db_path), config=_load_config(config_path))


def _print_not_initialized() -> None:
    console.print("\n[bold yellow]No stream meter database found[/]")
    console.print("Run `ai-stream-meter init` to initialize the database\n")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """AI Stream Meter CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Stream Meter - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the usage ledger and stream state tables."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def estimate(
    text: Optional[str] = typer.Argument(None, help="Text to estimate"),
    model: str = typer.Option("gpt-4.1-mini", "--model", "-m", help="Model identifier"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read text from a file")
):
    """Estimate the token count of a text."""
    if file is not None:
        try:
            text = file.read_text(encoding="utf-8")
        except OSError as e:
            console.print(f"[red]Error reading file:[/] {str(e)}")
            sys.exit(EXIT_CODE_FAIL)
    if text is None:
        console.print("[red]Error:[/] provide TEXT or --file")
        sys.exit(EXIT_CODE_FAIL)

    tokens = estimate_tokens(text, model)
    console.print(f"{tokens} tokens ({len(text)} characters, model {model})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def streams(
    conversation: Optional[str] = typer.Option(
        None, "--conversation", help="Only show streams of this conversation"
    ),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """List interrupted streams that can be resumed."""
    try:
        manager = _state_manager(db, config)
        incomplete = manager.get_incomplete_streams(conversation)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_not_initialized()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not incomplete:
        console.print("[green]✓[/] No incomplete streams")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Incomplete Streams")
    table.add_column("Stream")
    table.add_column("Conversation")
    table.add_column("Model")
    table.add_column("Tokens", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Last Update")
    for state in incomplete:
        table.add_row(
            state.stream_id,
            state.conversation_id,
            state.model,
            str(state.tokens_generated),
            f"{round(manager.estimate_progress(state) * 100)}%",
            state.last_update.strftime("%Y-%m-%d %H:%M:%S")
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def dismiss(
    stream_id: Optional[str] = typer.Argument(None, help="Stream to dismiss"),
    all_streams: bool = typer.Option(False, "--all", help="Dismiss every incomplete stream"),
    conversation: Optional[str] = typer.Option(
        None, "--conversation", help="With --all, only this conversation"
    ),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Dismiss interrupted streams."""
    if stream_id is None and not all_streams:
        console.print("[red]Error:[/] provide STREAM_ID or --all")
        sys.exit(EXIT_CODE_FAIL)

    try:
        manager = _state_manager(db, config)
        if all_streams:
            targets = [state.stream_id for state in manager.get_incomplete_streams(conversation)]
        elif manager.get_stream_state(stream_id) is not None:
            targets = [stream_id]
        else:
            targets = []
        for target in targets:
            manager.remove_stream_state(target)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not targets and not all_streams:
        console.print(f"[yellow]No stream found with id {stream_id}[/]")
    console.print(f"[green]✓[/] Dismissed {len(targets)} stream(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user"),
    conversation: Optional[str] = typer.Option(
        None, "--conversation", help="Filter by conversation"
    ),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
    db: str = DB_OPTION
):
    """Show recorded token usage, newest first."""
    try:
        records = fetch_recent_usage_records(
            user_id=user, conversation_id=conversation, limit=limit, db_path=db
        )
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_not_initialized()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("\n[dim]No usage recorded yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Token Usage")
    table.add_column("Time")
    table.add_column("User")
    table.add_column("Conversation")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Total", justify="right")
    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.user_id,
            record.conversation_id,
            record.model,
            f"{record.input_tokens:,}",
            f"{record.output_tokens:,}",
            f"{record.total_tokens:,}"
        )
    console.print(table)
    console.print(f"\nTotal tokens: {sum(r.total_tokens for r in records):,}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
