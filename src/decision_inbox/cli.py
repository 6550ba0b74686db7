"""Command-line interface for the Decision Inbox.

Provides commands for configuration validation, database setup,
re-classification and the decision lifecycle.

Usage:
    python -m decision_inbox validate-config
    python -m decision_inbox init-db
    python -m decision_inbox reclassify --user me@example.com --unread-only
    python -m decision_inbox pending --user me@example.com
    python -m decision_inbox snooze --user me@example.com MSG_ID --until 2026-01-20T09:00
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from decision_inbox.config import validate_config_file
from decision_inbox.core.clock import ensure_utc
from decision_inbox.core.errors import (
    ConfigLoadError,
    ConfigValidationError,
    DecisionInboxError,
    InvalidStateTransitionError,
    NotFoundError,
)
from decision_inbox.core.logging import configure_logging

if TYPE_CHECKING:
    from decision_inbox.classifier.claude_classifier import DecisionClassifier
    from decision_inbox.config_schema import AppConfig
    from decision_inbox.db.store import Decision, DecisionStore

console = Console()

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DecisionStore


async def _init_cli_deps() -> CLIDeps:
    """Load config and open the database.

    Prints actionable error messages and calls sys.exit(1) on failure.
    """
    from decision_inbox.config import get_config
    from decision_inbox.db.store import DecisionStore

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml "
            "or set DECISION_INBOX_CONFIG_PATH."
        )
        sys.exit(1)

    store = DecisionStore(Path(config.database.path))
    await store.initialize()
    return CLIDeps(config=config, store=store)


def _build_classifier(config: AppConfig, store: DecisionStore) -> DecisionClassifier:
    """Create the Claude adapter (reads ANTHROPIC_API_KEY from the environment)."""
    from decision_inbox.classifier.claude_classifier import (
        ClaudeDecisionClassifier,
        build_anthropic_client,
    )

    return ClaudeDecisionClassifier(
        anthropic_client=build_anthropic_client(config),
        config=config,
        store=store,
    )


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body with the CLI's error conventions."""
    try:
        return asyncio.run(coro_factory())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except InvalidStateTransitionError as e:
        console.print(f"[red]Not allowed:[/red] {e}")
        sys.exit(1)
    except NotFoundError as e:
        console.print(f"[red]Not found:[/red] {e}")
        sys.exit(1)
    except DecisionInboxError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _parse_until(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> datetime | None:
    """Parse an ISO 8601 timestamp; naive values are treated as UTC."""
    if value is None:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError as e:
        raise click.BadParameter(
            f"'{value}' is not an ISO 8601 timestamp (e.g. 2026-01-20T09:00:00+00:00)"
        ) from e


def _print_decision(decision: Decision) -> None:
    snoozed = (
        f" until {decision.snoozed_until.isoformat()}" if decision.snoozed_until else ""
    )
    console.print(
        f"[green]✓[/green] {decision.email_id}: [cyan]{decision.status}[/cyan]{snoozed} "
        f"({decision.decision_type})"
    )


user_option = click.option("--user", "user_id", required=True, help="Owning user id")


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Decision Inbox - flag email that needs a reply, a decision or an action."""
    log_level = "DEBUG" if debug else "INFO"
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database and its tables."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        console.print(f"[green]✓[/green] Database ready at [cyan]{deps.store.db_path}[/cyan]")

    _run(_body)


@cli.command("reclassify")
@user_option
@click.option("--unread-only", is_flag=True, help="Only re-classify unread email")
@click.option("--limit", default=None, type=int, help="Maximum emails to process")
def reclassify(user_id: str, unread_only: bool, limit: int | None) -> None:
    """Re-run classification over stored email.

    Decisions the user already actioned keep their status.
    """

    async def _body() -> None:
        from decision_inbox.engine.resolver import DecisionResolver

        deps = await _init_cli_deps()
        resolver = DecisionResolver(
            classifier=_build_classifier(deps.config, deps.store),
            store=deps.store,
            config=deps.config,
        )
        result = await resolver.reclassify_stored(user_id, unread_only=unread_only, limit=limit)

        console.print(f"\n[bold]Classification Summary[/bold] (batch {result.batch_id[:8]}...)")
        console.print(f"  Duration:    {result.duration_ms}ms")
        console.print(f"  Emails:      {result.total}")
        console.print(f"  Fast path:   {result.fast_path}")
        console.print(f"  Classified:  {result.ai_classified}")
        console.print(f"  Fallback:    {result.fallback}")
        console.print(f"  Failed:      {result.failed}")
        for email_id, error in result.failures:
            console.print(f"  [red]✗[/red] {email_id}: {error}")

    _run(_body)


@cli.command("pending")
@user_option
@click.option("--required-only", is_flag=True, help="Only decisions that need action")
def pending(user_id: str, required_only: bool) -> None:
    """List decisions awaiting the user (including elapsed snoozes)."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        items = await deps.store.list_pending(user_id, required_only=required_only)

        if not items:
            console.print("No pending decisions.")
            return

        table = Table(title=f"Pending decisions ({len(items)})")
        table.add_column("Email", style="cyan", no_wrap=True)
        table.add_column("Urgency")
        table.add_column("Type")
        table.add_column("From")
        table.add_column("Subject")
        table.add_column("Reason")
        for item in items:
            decision = item.decision
            table.add_row(
                decision.email_id,
                decision.urgency,
                decision.decision_type,
                item.from_address or "",
                item.subject or "",
                decision.reason,
            )
        console.print(table)

    _run(_body)


@cli.command("stats")
@user_option
def stats(user_id: str) -> None:
    """Show decision counts by status, type and urgency."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        result = await deps.store.stats(user_id)

        console.print(f"\n[bold]Decision Stats[/bold] ({user_id})")
        console.print(f"  Total:            {result.total}")
        console.print(f"  Requires action:  {result.requires_action}")
        console.print(f"  Skipped AI:       {result.skipped_ai}")
        console.print(f"  Fallback:         {result.fallback}")

        table = Table(show_header=True)
        table.add_column("Status")
        table.add_column("Count", justify="right")
        for status, count in result.by_status.items():
            table.add_row(status, str(count))
        console.print(table)

        table = Table(show_header=True)
        table.add_column("Type")
        table.add_column("Count", justify="right")
        for decision_type, count in result.by_type.items():
            table.add_row(decision_type, str(count))
        console.print(table)

        table = Table(show_header=True)
        table.add_column("Urgency")
        table.add_column("Count", justify="right")
        for urgency, count in result.by_urgency.items():
            table.add_row(urgency, str(count))
        console.print(table)

    _run(_body)


@cli.command("complete")
@user_option
@click.argument("email_id")
def complete(user_id: str, email_id: str) -> None:
    """Mark a decision as done."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        _print_decision(await deps.store.complete(email_id, user_id))

    _run(_body)


@cli.command("dismiss")
@user_option
@click.argument("email_id")
def dismiss(user_id: str, email_id: str) -> None:
    """Dismiss a decision."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        _print_decision(await deps.store.dismiss(email_id, user_id))

    _run(_body)


@cli.command("not-decision")
@user_option
@click.argument("email_id")
@click.option("--comment", default=None, help="Why this is not a decision")
def not_decision(user_id: str, email_id: str, comment: str | None) -> None:
    """Mark an email as not needing a decision and record feedback."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        _print_decision(await deps.store.mark_not_decision(email_id, user_id, comment=comment))

    _run(_body)


@cli.command("snooze")
@user_option
@click.argument("email_id")
@click.option(
    "--until",
    required=True,
    callback=_parse_until,
    help="ISO 8601 time the decision reappears (naive values are UTC)",
)
def snooze(user_id: str, email_id: str, until: datetime) -> None:
    """Hide a decision until a future time."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        _print_decision(await deps.store.snooze(email_id, user_id, until=until))

    _run(_body)


@cli.command("prune-logs")
@click.option(
    "--days",
    default=None,
    type=int,
    help="Retention in days (default: llm_logging.retention_days)",
)
def prune_logs(days: int | None) -> None:
    """Delete LLM request logs past the retention period."""

    async def _body() -> None:
        deps = await _init_cli_deps()
        retention = days if days is not None else deps.config.llm_logging.retention_days
        deleted = await deps.store.prune_llm_logs(retention)
        console.print(
            f"[green]✓[/green] Pruned {deleted} LLM log entries older than {retention} days"
        )

    _run(_body)


def main() -> None:
    """Entry point for the CLI (console script and python -m)."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
