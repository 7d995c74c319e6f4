"""CLI commands: devfence apply / devfence plan."""

from __future__ import annotations

import ipaddress
import sys

import click
from rich.table import Table

from devfence.cli._common import console, resolve_policy
from devfence.config import DevfenceConfig
from devfence.errors import ApplyFailure, ProviderUnavailable
from devfence.pipeline import EgressPipeline, RunReport
from devfence.policy.models import Family, IPNetwork


def _parse_network(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> IPNetwork | None:
    if value is None:
        return None
    try:
        return ipaddress.ip_network(value, strict=False)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


@click.command()
@click.option(
    "--host-network",
    callback=_parse_network,
    help="CIDR of the host network (default: derived from the default route).",
)
@click.option(
    "--skip-verify",
    is_flag=True,
    help="Do not run verification probes (exits 5: applied but unverified).",
)
@click.pass_context
def apply(ctx: click.Context, host_network: IPNetwork | None, skip_verify: bool) -> None:
    """Resolve the allow-list and install the default-deny firewall."""
    from devfence.cli import EXIT_APPLY, EXIT_PROVIDER, EXIT_UNVERIFIED, EXIT_VERIFICATION

    config = DevfenceConfig.load()
    policy = resolve_policy(ctx, config)
    console.print(f"[bold]devfence[/bold] applying policy [cyan]{policy.name}[/cyan]")

    pipeline = EgressPipeline(config)
    try:
        report = pipeline.run(policy, host_network=host_network, verify=not skip_verify)
    except ProviderUnavailable as exc:
        console.print(f"[red]✗ Range fetch failed, no rules applied:[/red] {exc}")
        sys.exit(EXIT_PROVIDER)
    except ApplyFailure as exc:
        console.print(f"[red]✗ {exc}[/red]")
        console.print("  Firewall locked down: default DROP, loopback only")
        sys.exit(EXIT_APPLY)

    print_summary(report)
    if report.verification is None:
        console.print(
            "\n[bold yellow]⚠ Verification skipped: firewall applied but not confirmed[/bold yellow]"
        )
        sys.exit(EXIT_UNVERIFIED)
    if not report.ok:
        console.print("\n[red]✗ Firewall verification failed: blocked target reachable[/red]")
        sys.exit(EXIT_VERIFICATION)
    console.print("\n[green]✓ Network security boundary initialized[/green]")


@click.command()
@click.option("--host-network", callback=_parse_network, help="CIDR of the host network.")
@click.pass_context
def plan(ctx: click.Context, host_network: IPNetwork | None) -> None:
    """Print the compiled rule set without applying it."""
    from devfence.cli import EXIT_PROVIDER

    config = DevfenceConfig.load()
    policy = resolve_policy(ctx, config)
    try:
        report = EgressPipeline(config).plan(policy, host_network=host_network)
    except ProviderUnavailable as exc:
        console.print(f"[red]✗ {exc}[/red]")
        sys.exit(EXIT_PROVIDER)

    if report.compiled is not None:
        click.echo(report.compiled.render(), nl=False)
    print_summary(report)


def print_summary(report: RunReport) -> None:
    table = Table(title="Firewall Status", show_header=False, box=None, padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()

    table.add_row("Policy", report.policy_name)
    if report.resolution is not None:
        resolved = report.resolution.succeeded
        failed = len(report.resolution.failures)
        table.add_row("Domains resolved", f"{resolved} ok, {failed} failed")
        if report.resolution.skipped:
            table.add_row("Wildcards skipped", ", ".join(report.resolution.skipped))
    for failure in report.failures:
        table.add_row("", f"[yellow]⚠ {failure}[/yellow]")
    if report.malformed:
        table.add_row("Malformed entries", str(len(report.malformed)))
    table.add_row("Ranges fetched", ", ".join(r.provider for r in report.ranges) or "none")
    table.add_row("Whitelisted IPv4", str(report.allowed(Family.V4)))
    table.add_row("Whitelisted IPv6", str(report.allowed(Family.V6)))
    if report.compiled is not None:
        table.add_row("Digest", report.compiled.digest[:16])
    if report.handle is not None:
        families = "+".join(f.value for f in report.handle.families)
        table.add_row("Applied", f"{report.handle.rule_count} rules ({families})")
    if report.verification is not None:
        for result in report.verification.results:
            color = "green" if result.passed else ("red" if result.fatal else "yellow")
            status = "PASSED" if result.passed else "FAILED"
            table.add_row(
                f"Probe {result.name}",
                f"[{color}]{status}[/{color}] {result.url} ({result.detail})",
            )
    console.print()
    console.print(table)
