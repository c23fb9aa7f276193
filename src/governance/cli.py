"""
Governance CLI
Operator commands for organization quotas and rate limits.
"""

import asyncio
import json
import logging
import time

import click
from rich.console import Console
from rich.table import Table

from governance.config import settings
from governance.db import DatabaseManager, UsageStore
from governance.quota import PlanTier, QuotaManager, RateLimiter
from governance.scheduler import QuotaResetScheduler

console = Console()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_quota_manager(ctx: click.Context) -> QuotaManager:
    """Create a quota manager bound to the configured database."""
    return QuotaManager(UsageStore(ctx.obj["db"]), default_tier=settings.quota_default_tier)


@click.group()
@click.option("--database-url", "-d", default=None, help="Database URL (defaults to settings)")
@click.option("--log-level", default=None, help="Logging level (defaults to settings)")
@click.pass_context
def cli(ctx, database_url, log_level):
    """Organization quota and rate limit administration."""
    configure_logging(log_level or settings.log_level)
    ctx.ensure_object(dict)
    db = DatabaseManager(
        database_url=database_url or settings.database_url,
        echo=settings.database_echo,
    )
    ctx.obj["db"] = db
    ctx.call_on_close(db.close)


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the usage accounting tables."""
    ctx.obj["db"].init_db()
    console.print("✅ [green]Database tables ready[/green]")


@cli.command()
@click.argument("org_id")
@click.option(
    "--tier",
    "-t",
    type=click.Choice([t.value for t in PlanTier]),
    default=PlanTier.STARTER.value,
    help="Subscription tier",
)
@click.pass_context
def init(ctx, org_id: str, tier: str):
    """Initialize quota for an organization (no-op if already present)."""
    asyncio.run(get_quota_manager(ctx).initialize_quota(org_id, tier))
    console.print(f"✅ [green]{org_id} initialized on {tier}[/green]")


@cli.command()
@click.argument("org_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def usage(ctx, org_id: str, as_json: bool):
    """Show usage against limits for an organization."""
    summary = asyncio.run(get_quota_manager(ctx).get_usage(org_id))

    if as_json:
        console.print(json.dumps(summary.to_dict(), indent=2))
        return

    table = Table(title=f"Usage for {org_id}")
    table.add_column("Resource", style="cyan")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Used %", justify="right")

    for name, item in (
        ("API calls", summary.api_calls),
        ("Storage (bytes)", summary.storage),
        ("Recordings", summary.recordings),
    ):
        color = "green" if item.percentage < 80 else "yellow" if item.percentage < 100 else "red"
        table.add_row(
            name,
            f"{item.used:,}",
            f"{item.limit:,}",
            f"[{color}]{item.percentage}%[/{color}]",
        )

    console.print(table)


@cli.command()
@click.argument("org_id")
@click.pass_context
def reset(ctx, org_id: str):
    """Zero an organization's usage and schedule the next reset."""
    asyncio.run(get_quota_manager(ctx).reset_quota(org_id))
    console.print(f"✅ [green]Reset requested for {org_id}[/green]")


@cli.command("reconcile-storage")
@click.argument("org_id")
@click.pass_context
def reconcile_storage(ctx, org_id: str):
    """Recompute storage usage from stored content."""
    asyncio.run(get_quota_manager(ctx).update_storage_usage(org_id))
    console.print(f"✅ [green]Storage reconciled for {org_id}[/green]")


@cli.command()
@click.pass_context
def sweep(ctx):
    """Reset every organization whose reset date has passed."""
    count = asyncio.run(get_quota_manager(ctx).reset_expired_quotas())
    console.print(f"✅ [green]Reset {count} organization(s)[/green]")


@cli.command("reset-limit")
@click.argument("identifier")
@click.option("--redis-url", default=None, help="Redis URL (defaults to settings)")
def reset_limit(identifier: str, redis_url):
    """Clear the rate limit window for an identifier."""

    async def _reset() -> None:
        limiter = RateLimiter(redis_url=redis_url)
        try:
            await limiter.reset_limit(identifier)
        finally:
            await limiter.close()

    asyncio.run(_reset())
    console.print(f"✅ [green]Rate limit cleared for {identifier!r}[/green]")


@cli.command("scheduler")
@click.option("--interval", "-i", type=int, default=None, help="Minutes between sweeps (defaults to settings)")
@click.option("--run-now", is_flag=True, help="Sweep once immediately on start")
@click.pass_context
def run_scheduler(ctx, interval, run_now: bool):
    """Run the quota reset sweep in the foreground until interrupted."""
    interval = interval or settings.quota_reset_sweep_interval
    service = QuotaResetScheduler(
        get_quota_manager(ctx),
        interval_minutes=interval,
        timezone=settings.scheduler_timezone,
    )
    service.start(run_immediately=run_now)
    console.print(f"[green]Sweeping expired quotas every {interval}m. Press Ctrl+C to stop.[/green]")

    try:
        while service.running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.shutdown()


def main():
    """Entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
