"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging

import click

from devfence import __version__

# Exit codes
EXIT_VERIFICATION = 1
EXIT_PROVIDER = 2
EXIT_APPLY = 3
EXIT_POLICY = 4
EXIT_UNVERIFIED = 5


@click.group()
@click.version_option(version=__version__, prog_name="devfence")
@click.option(
    "--policy",
    "-p",
    type=click.Path(exists=True),
    help="Path to a YAML egress policy file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, policy: str | None, verbose: bool) -> None:
    """devfence — default-deny egress firewall for AI coding-agent containers."""
    ctx.ensure_object(dict)
    ctx.obj["policy_path"] = policy
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from devfence.cli.apply import apply, plan  # noqa: F811
    from devfence.cli.audit import audit  # noqa: F811
    from devfence.cli.verify import lockdown, verify  # noqa: F811

    main.add_command(apply)
    main.add_command(plan)
    main.add_command(verify)
    main.add_command(lockdown)
    main.add_command(audit)


_register_commands()
