#!/usr/bin/env python
"""
CLI management commands for DotMac Subscriptions.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

import click

from dotmac.subscriptions.db import (
    check_database_health,
    dispose_engine,
    get_session_factory,
    init_db,
)
from dotmac.subscriptions.logging import setup_logging
from dotmac.subscriptions.models import Subscription, SweepReport, ensure_utc
from dotmac.subscriptions.repository import (
    SQLAlchemySubscriptionRepository,
    SubscriptionRepository,
)
from dotmac.subscriptions.tasks import run_sweep


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    init_db: Callable[[], Awaitable[None]]
    run_sweep: Callable[[datetime | None], Awaitable[SweepReport]]
    check_health: Callable[[], Awaitable[bool]]
    repository_factory: Callable[[], SubscriptionRepository]
    shutdown: Callable[[], Awaitable[None]]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        init_db=init_db,
        run_sweep=run_sweep,
        check_health=check_database_health,
        repository_factory=lambda: SQLAlchemySubscriptionRepository(get_session_factory()),
        shutdown=dispose_engine,
    )


def _parse_now(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise click.BadParameter(
            f"not an ISO-8601 timestamp: {value}", param_hint="--now"
        ) from None


def _summary(subscription: Subscription) -> str:
    return (
        f"{subscription.id}  {subscription.status.value:9}  plan={subscription.plan_id}  "
        f"ends={subscription.end_date.isoformat()}  version={subscription.version}"
    )


@click.group()
def cli() -> None:
    """DotMac Subscriptions CLI."""
    setup_logging()


@cli.command("init-db")
def init_database() -> None:
    """Create the subscription tables."""
    deps = _get_cli_dependencies()

    async def _init() -> None:
        try:
            await deps.init_db()
        finally:
            await deps.shutdown()

    click.echo("Initializing database...")
    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command("check-db")
def check_db() -> None:
    """Check that the database is reachable."""
    deps = _get_cli_dependencies()

    async def _check() -> bool:
        try:
            return await deps.check_health()
        finally:
            await deps.shutdown()

    if asyncio.run(_check()):
        click.echo("database       ✓ Connected")
    else:
        click.echo("database       ✗ Unreachable")
        raise SystemExit(1)


@cli.command()
@click.option("--now", "now_value", default=None, help="Sweep as of this ISO-8601 timestamp")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def sweep(now_value: str | None, as_json: bool) -> None:
    """Run one expiry sweep pass."""
    deps = _get_cli_dependencies()
    now = _parse_now(now_value)

    report = asyncio.run(deps.run_sweep(now))

    if as_json:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
        return
    click.echo(f"Sweep at {report.now.isoformat()}")
    click.echo("-" * 40)
    click.echo(f"{'examined':15} {report.examined}")
    click.echo(f"{'expired':15} {report.expired}")
    click.echo(f"{'trials ended':15} {report.trials_ended}")
    click.echo(f"{'skipped':15} {report.skipped}")
    click.echo(f"{'conflicts':15} {report.conflicts}")


@cli.command("show")
@click.argument("user_id")
def show_subscriptions(user_id: str) -> None:
    """List a user's subscriptions, newest first."""
    deps = _get_cli_dependencies()

    async def _list() -> list[Subscription]:
        try:
            return await deps.repository_factory().list_for_user(user_id)
        finally:
            await deps.shutdown()

    subscriptions = asyncio.run(_list())
    if not subscriptions:
        click.echo(f"No subscriptions for {user_id}")
        return
    for subscription in subscriptions:
        click.echo(_summary(subscription))


if __name__ == "__main__":
    cli()
