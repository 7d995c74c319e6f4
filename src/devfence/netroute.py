"""Host network detection from the default route."""

from __future__ import annotations

import ipaddress
import logging

from devfence.firewall.runner import CommandError, CommandRunner
from devfence.policy.models import IPNetwork

logger = logging.getLogger(__name__)


def detect_host_network(runner: CommandRunner | None = None) -> IPNetwork | None:
    """Return the /24 around the default gateway, or None if there is none."""
    runner = runner or CommandRunner()
    try:
        result = runner.run(["ip", "route", "show", "default"])
    except CommandError as exc:
        logger.warning("Failed to read routing table: %s", exc.reason)
        return None

    gateway = parse_default_gateway(result.stdout)
    if gateway is None:
        logger.warning("Failed to detect host IP (host communication may be limited)")
        return None

    prefix = 24 if gateway.version == 4 else 64
    network = ipaddress.ip_network(f"{gateway}/{prefix}", strict=False)
    logger.info("Host network detected: %s", network)
    return network


def parse_default_gateway(output: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Extract the ``via`` address of the first default route in ``ip route`` output."""
    for line in output.splitlines():
        parts = line.split()
        if not parts or parts[0] != "default" or "via" not in parts:
            continue
        idx = parts.index("via")
        if idx + 1 >= len(parts):
            continue
        try:
            return ipaddress.ip_address(parts[idx + 1])
        except ValueError:
            continue
    return None
