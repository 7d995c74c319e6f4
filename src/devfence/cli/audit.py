"""CLI commands: devfence audit ingest / show / reconcile."""

from __future__ import annotations

import datetime
import time

import click
from rich.table import Table

from devfence.audit import AuditSink
from devfence.cli._common import console
from devfence.config import DevfenceConfig
from devfence.firewall.applier import RuleApplier
from devfence.policy.models import LogLimit


def _sink(config: DevfenceConfig) -> AuditSink:
    return AuditSink(config.audit_path, LogLimit(config.log_burst, config.log_per_minute))


@click.group()
def audit() -> None:
    """Inspect blocked-traffic records."""


@audit.command()
@click.argument("source", type=click.File("r"), default="-")
def ingest(source) -> None:
    """Read kernel log lines (default: stdin) and store FIREWALL_BLOCK records."""
    sink = _sink(DevfenceConfig.load())
    written = sink.ingest(source)
    sink.flush()
    console.print(f"Stored {written} audit records")


@audit.command()
@click.option("--direction", type=click.Choice(["in", "out"]), help="Filter by direction.")
@click.option("--family", type=click.Choice(["v4", "v6"]), help="Filter by address family.")
@click.option("--minutes", type=int, help="Only records from the last N minutes.")
def show(direction: str | None, family: str | None, minutes: int | None) -> None:
    """List stored audit records."""
    config = DevfenceConfig.load()
    since = time.time() - minutes * 60 if minutes else None
    records = list(_sink(config).query(direction=direction, family=family, since=since))
    if not records:
        console.print("[green]No blocked traffic recorded.[/green]")
        return

    table = Table(title="Blocked traffic")
    table.add_column("Time", style="dim")
    table.add_column("Dir")
    table.add_column("Family")
    table.add_column("Source")
    table.add_column("Destination", style="cyan")
    table.add_column("Proto")
    for r in records:
        stamp = datetime.datetime.fromtimestamp(r.timestamp).strftime("%Y-%m-%d %H:%M:%S")
        if r.decision == "suppressed":
            marker = f"[yellow]{r.suppressed} suppressed[/yellow]"
            table.add_row(stamp, r.direction, r.family, "", marker, "")
            continue
        table.add_row(
            stamp, r.direction, r.family, r.source_ip, f"{r.dest_ip}:{r.port}", r.protocol
        )
    console.print(table)


@audit.command()
def reconcile() -> None:
    """Add suppression markers for denials the kernel rate-limited away."""
    config = DevfenceConfig.load()
    applier = RuleApplier(lock_path=config.lock_path)
    counters = applier.deny_counters()
    missing = _sink(config).reconcile(counters, since=applier.last_applied_at())
    console.print(f"{missing} denied packets were not logged individually")
