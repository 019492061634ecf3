"""
Pushcast CLI entry point.

Commands:
    pushcast serve      - Run the scheduler loop
    pushcast run-due    - Process due notifications once
    pushcast send       - Send a notification now
    pushcast schedule   - Schedule a (recurring) notification
    pushcast scheduled  - List pending notifications
    pushcast cancel     - Cancel a pending notification
    pushcast history    - Show recent dispatches
    pushcast tokens     - Register / list device tokens
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Coroutine, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pushcast.core.config import PushcastConfig
from pushcast.core.errors import NoRecipientsError, PushcastError
from pushcast.notifications.base import NotificationContent, PushTransport, RecurrenceRule
from pushcast.notifications.dispatcher import MulticastDispatcher
from pushcast.notifications.service import NotificationService
from pushcast.registry.sqlite import SQLiteTokenRegistry
from pushcast.scheduler.engine import SchedulerEngine
from pushcast.scheduler.store import SQLiteNotificationStore

app = typer.Typer(
    name="pushcast",
    help="Pushcast - multicast push notifications with scheduling.",
    add_completion=False,
)
tokens_app = typer.Typer(help="Manage registered device tokens.")
app.add_typer(tokens_app, name="tokens")

console = Console()

T = TypeVar("T")


def get_home() -> Path:
    """Get the Pushcast home directory."""
    return Path.home() / ".pushcast"


def get_config_path() -> Path:
    """Get the user config file path."""
    return get_home() / "config.toml"


# ━━━ Wiring ━━━


@dataclass
class Runtime:
    config: PushcastConfig
    registry: SQLiteTokenRegistry
    store: SQLiteNotificationStore
    transport: PushTransport
    dispatcher: MulticastDispatcher
    service: NotificationService


def make_transport(config: PushcastConfig) -> PushTransport:
    """Build the configured push transport."""
    if config.transport.provider == "fcm":
        from pushcast.notifications.transports.credentials import (
            ServiceAccountToken,
            load_service_account,
        )
        from pushcast.notifications.transports.fcm import FCMTransport

        credentials = None
        if config.transport.service_account:
            credentials = ServiceAccountToken.from_info(
                load_service_account(config.transport.service_account)
            )
        return FCMTransport(
            project_id=config.transport.project_id,
            access_token=config.transport.access_token,
            credentials=credentials,
            endpoint=config.transport.endpoint,
            timeout=config.transport.timeout,
            max_connections=config.transport.max_connections,
        )
    from pushcast.notifications.transports.log import LogTransport

    return LogTransport()


@asynccontextmanager
async def open_runtime(config: PushcastConfig) -> AsyncIterator[Runtime]:
    transport = make_transport(config)
    registry = SQLiteTokenRegistry(config.registry.db_path)
    store = SQLiteNotificationStore(Path(config.scheduler.db_path))
    try:
        await registry.initialize()
        await store.initialize()
        dispatcher = MulticastDispatcher(
            transport,
            registry,
            batch_size=config.dispatch.batch_size,
            max_concurrent_batches=config.dispatch.max_concurrent_batches,
        )
        yield Runtime(
            config=config,
            registry=registry,
            store=store,
            transport=transport,
            dispatcher=dispatcher,
            service=NotificationService(dispatcher, registry, store),
        )
    finally:
        await transport.close()
        await store.close()
        await registry.close()


def make_engine(rt: Runtime) -> SchedulerEngine:
    return SchedulerEngine(
        rt.store,
        rt.dispatcher,
        rt.registry,
        poll_interval=rt.config.scheduler.poll_interval,
        claim_lease=rt.config.scheduler.claim_lease,
    )


def _load_config() -> PushcastConfig:
    try:
        return PushcastConfig.load(user_path=get_config_path())
    except PushcastError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run one command's coroutine; Pushcast errors become a message and exit 1."""
    try:
        return asyncio.run(coro)
    except NoRecipientsError as e:
        console.print(f"[yellow]{e.message}[/yellow]")
        raise typer.Exit(1)
    except PushcastError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


def _content(
    title: str,
    body: str,
    image: str | None,
    click: str | None,
    data: list[str] | None,
) -> NotificationContent:
    pairs: dict[str, str] = {}
    for item in data or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--data")
        pairs[key] = value
    return NotificationContent(
        title=title, body=body, image_url=image, click_action=click, data=pairs
    )


# ━━━ Commands ━━━


@app.command()
def serve(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output"),
) -> None:
    """Run the scheduler until interrupted."""
    config = _load_config()
    from pushcast.core.logging import setup_logging

    setup_logging(config.logging, console_level=logging.DEBUG if verbose else None)
    if not config.scheduler.enabled:
        console.print("[yellow]Scheduler is disabled in config.[/yellow]")
        raise typer.Exit(1)
    try:
        _run(_serve(config))
    except KeyboardInterrupt:
        pass


async def _serve(config: PushcastConfig) -> None:
    logger = logging.getLogger("pushcast")
    async with open_runtime(config) as rt:
        engine = make_engine(rt)
        await engine.start()
        console.print(
            f"[green]Scheduler running[/green] "
            f"[dim](transport={rt.transport.name}, poll={config.scheduler.poll_interval}s, "
            f"Ctrl-C to stop)[/dim]"
        )
        try:
            await asyncio.Event().wait()
        finally:
            logger.info("Shutting down")
            await engine.stop()


@app.command("run-due")
def run_due() -> None:
    """Process every notification that is due right now, once."""
    config = _load_config()

    async def _go():
        async with open_runtime(config) as rt:
            return await make_engine(rt).run_due()

    report = _run(_go())
    if not report.processed and not report.skipped:
        console.print("[dim]No scheduled notifications to send[/dim]")
        return
    console.print(
        f"sent={len(report.sent)} rescheduled={len(report.rescheduled)} "
        f"failed={len(report.failed)} skipped={len(report.skipped)}"
    )


@app.command()
def send(
    title: str = typer.Option(..., "--title", "-t"),
    body: str = typer.Option(..., "--body", "-b"),
    image: Optional[str] = typer.Option(None, "--image", help="Image URL"),
    click: Optional[str] = typer.Option(None, "--click", help="Click target (default /)"),
    data: Optional[list[str]] = typer.Option(None, "--data", "-d", help="KEY=VALUE, repeatable"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this owner's devices"),
) -> None:
    """Send a notification to all devices (or one user's) now."""
    config = _load_config()
    content = _content(title, body, image, click, data)

    async def _go():
        async with open_runtime(config) as rt:
            if user:
                return await rt.service.send_to_user(user, content)
            return await rt.service.send_to_all(content)

    outcome = _run(_go())

    console.print(
        f"Sent to {outcome.success_count}/{outcome.total_devices} devices "
        f"[dim]({outcome.failure_count} failed, {outcome.pruned_count} pruned)[/dim]"
    )


@app.command()
def schedule(
    title: str = typer.Option(..., "--title", "-t"),
    body: str = typer.Option(..., "--body", "-b"),
    at: str = typer.Option(..., "--at", help="ISO-8601 time; naive values are UTC"),
    every: Optional[str] = typer.Option(None, "--every", help="daily | weekly | monthly"),
    time_of_day: Optional[str] = typer.Option(None, "--time", help="HH:MM for recurring sends"),
    image: Optional[str] = typer.Option(None, "--image"),
    click: Optional[str] = typer.Option(None, "--click"),
    data: Optional[list[str]] = typer.Option(None, "--data", "-d"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
) -> None:
    """Schedule a notification, optionally recurring."""
    try:
        when = datetime.fromisoformat(at)
    except ValueError:
        raise typer.BadParameter(f"not an ISO-8601 time: {at!r}", param_hint="--at")
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    recurrence = RecurrenceRule(every, time_of_day=time_of_day) if every else None
    config = _load_config()
    content = _content(title, body, image, click, data)

    async def _go():
        async with open_runtime(config) as rt:
            return await rt.service.schedule(content, when, recurrence, target_user_id=user)

    record = _run(_go())
    console.print(f"Scheduled [bold]{record.id}[/bold] for {record.scheduled_time.isoformat()}")


@app.command()
def scheduled() -> None:
    """List pending scheduled notifications."""
    config = _load_config()

    async def _go():
        async with open_runtime(config) as rt:
            return await rt.service.list_scheduled()

    records = _run(_go())
    if not records:
        console.print("[dim]No pending notifications.[/dim]")
        return
    table = Table(title="Pending notifications")
    for column in ("ID", "Due (UTC)", "Title", "Repeat", "Target"):
        table.add_column(column)
    for r in records:
        table.add_row(
            r.id,
            r.scheduled_time.strftime("%Y-%m-%d %H:%M"),
            r.content.title,
            r.recurrence.description if r.recurring and r.recurrence else "-",
            r.target,
        )
    console.print(table)


@app.command()
def cancel(notification_id: str = typer.Argument(...)) -> None:
    """Cancel a pending scheduled notification."""
    config = _load_config()

    async def _go():
        async with open_runtime(config) as rt:
            return await rt.service.cancel(notification_id)

    if not _run(_go()):
        console.print(f"[yellow]No pending notification {notification_id}[/yellow]")
        raise typer.Exit(1)
    console.print(f"Cancelled {notification_id}")


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show"),
) -> None:
    """Show recent dispatches, newest first."""
    config = _load_config()

    async def _go():
        async with open_runtime(config) as rt:
            return await rt.service.history(limit)

    entries = _run(_go())
    if not entries:
        console.print("[dim]No dispatches yet.[/dim]")
        return
    table = Table(title="Dispatch history")
    for column in ("Sent (UTC)", "Title", "Target", "Delivered", "Failed"):
        table.add_column(column)
    for h in entries:
        table.add_row(
            h.sent_at.strftime("%Y-%m-%d %H:%M:%S"),
            h.content.title,
            h.target,
            f"{h.success_count}/{h.total_devices}",
            str(h.failure_count),
        )
    console.print(table)


@tokens_app.command("register")
def tokens_register(
    token: str = typer.Argument(...),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Owner id"),
    platform: Optional[str] = typer.Option(None, "--platform", "-p", help="android | ios | web"),
) -> None:
    """Register a device token."""
    config = _load_config()

    async def _go():
        async with open_runtime(config) as rt:
            return await rt.registry.register(token, owner_id=user, platform=platform)

    record = _run(_go())
    console.print(f"Registered token [bold]{record.id}[/bold]")


@tokens_app.command("list")
def tokens_list(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this owner's tokens"),
) -> None:
    """List registered device tokens."""
    config = _load_config()

    async def _go():
        async with open_runtime(config) as rt:
            if user:
                return await rt.registry.tokens_for_owner(user)
            return await rt.registry.all_tokens()

    records = _run(_go())
    if not records:
        console.print("[dim]No devices registered.[/dim]")
        return
    for r in records:
        console.print(f"{r.token}  [dim]owner={r.owner_id or '-'} platform={r.platform or '-'}[/dim]")


@app.command()
def version() -> None:
    """Show Pushcast version."""
    from pushcast import __version__
    console.print(f"Pushcast v{__version__}")


@app.command()
def config() -> None:
    """Show the effective configuration."""
    cfg = _load_config()
    config_path = get_config_path()

    console.print(f"[bold]Config file:[/bold] {config_path}")
    if not config_path.exists():
        console.print("[dim]Not found - using defaults and PUSHCAST_* env vars[/dim]")

    effective = cfg.model_dump()
    for secret in ("access_token", "service_account"):
        if effective["transport"][secret]:
            effective["transport"][secret] = "***"
    console.print(Panel(json.dumps(effective, indent=2), title="effective config", border_style="dim"))


if __name__ == "__main__":
    app()
