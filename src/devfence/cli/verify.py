"""CLI commands: devfence verify / devfence lockdown."""

from __future__ import annotations

import sys

import click

from devfence.cli._common import console, resolve_policy
from devfence.config import DevfenceConfig
from devfence.firewall.applier import RuleApplier
from devfence.probe import VerificationProbe


@click.command()
@click.pass_context
def verify(ctx: click.Context) -> None:
    """Probe the live firewall against the policy's blocked/allowed targets."""
    from devfence.cli import EXIT_VERIFICATION

    config = DevfenceConfig.load()
    policy = resolve_policy(ctx, config)
    probe = VerificationProbe(
        policy.probes,
        blocked_timeout=config.blocked_probe_timeout,
        allowed_timeout=config.allowed_probe_timeout,
    )
    report = probe.verify()

    for result in report.results:
        if result.passed:
            console.print(f"  [green]✓[/green] {result.name}: {result.url} ({result.detail})")
        elif result.fatal:
            console.print(f"  [red]✗[/red] {result.name}: {result.url} ({result.detail})")
        else:
            console.print(f"  [yellow]⚠[/yellow] {result.name}: {result.url} ({result.detail})")

    if not report.ok:
        sys.exit(EXIT_VERIFICATION)


@click.command()
@click.confirmation_option(prompt="Block all traffic except loopback?")
def lockdown() -> None:
    """Fail closed: DROP everything except loopback."""
    config = DevfenceConfig.load()
    RuleApplier(lock_path=config.lock_path).lockdown()
    console.print("[yellow]Firewall locked down[/yellow]")
