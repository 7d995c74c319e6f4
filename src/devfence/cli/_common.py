"""Helpers shared by CLI commands."""

from __future__ import annotations

import sys

import click
from rich.console import Console

from devfence.config import DevfenceConfig
from devfence.errors import PolicyError
from devfence.policy.loader import load_default_policy, load_policy
from devfence.policy.models import EgressPolicy

console = Console(stderr=True)


def resolve_policy(ctx: click.Context, config: DevfenceConfig) -> EgressPolicy:
    """Load the policy named by ``--policy``, else the default one."""
    from devfence.cli import EXIT_POLICY

    policy_path = ctx.obj.get("policy_path")
    try:
        if policy_path:
            return load_policy(policy_path)
        return load_default_policy(config.policy_dirs)
    except PolicyError as exc:
        console.print(f"[red]Invalid policy:[/red] {exc}")
        sys.exit(EXIT_POLICY)
