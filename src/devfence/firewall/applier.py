"""Transactional application of a compiled policy to the live packet filter.

The kernel rule table is process-wide shared state without transactions, so
every mutation goes through ``RuleApplier`` and is serialized by a lock. The
protocol is strictly ordered:

1. snapshot container-internal DNS NAT rules that must survive
2. flush filter/nat/mangle for both families, destroy the allow ipsets
3. re-insert the snapshot
4. load the ipsets, insert EARLY_CORE and WHITELIST
5. insert LOGGED_DENY and DEFAULT_DENY
6. set default policies to DROP

Known limitation: between step 2 and step 6 the filter is fully open. Any
concurrent traffic in that window is not filtered. Setting DROP policies
earlier would instead cut off traffic the core rules are about to allow.

Any failure after the flush locks the filter down (DROP policies, loopback
only). A failed command then surfaces as ``ApplyFailure``; any other
exception propagates unchanged.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import shlex
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

from devfence.errors import ApplyFailure
from devfence.firewall.runner import CommandError, CommandRunner
from devfence.policy.compiler import BINARIES, SET_NAMES, Band, CompiledPolicy
from devfence.policy.models import Family

logger = logging.getLogger(__name__)

# Docker's embedded DNS resolver
_CONTAINER_DNS = "127.0.0.11"
_CONTAINER_DNS_CHAINS = ("DOCKER_OUTPUT", "DOCKER_POSTROUTING")
_TABLES = ("filter", "nat", "mangle")
_FILTER_CHAINS = ("INPUT", "FORWARD", "OUTPUT")

# One apply in flight per process
_APPLY_LOCK = threading.Lock()


@dataclass(frozen=True)
class AppliedPolicyHandle:
    """Describes the policy currently installed by this process."""

    digest: str
    name: str
    families: tuple[Family, ...]
    rule_count: int
    allowed: dict[Family, int] = field(hash=False)
    preserved: tuple[str, ...] = ()
    applied_at: float = field(default_factory=time.time)


class RuleApplier:
    """Pushes a ``CompiledPolicy`` into iptables/ip6tables/ipset."""

    def __init__(self, runner: CommandRunner | None = None, lock_path: Path | None = None) -> None:
        self._runner = runner or CommandRunner()
        self._lock_path = lock_path
        self._current: AppliedPolicyHandle | None = None

    @property
    def current(self) -> AppliedPolicyHandle | None:
        return self._current

    def apply(self, compiled: CompiledPolicy) -> AppliedPolicyHandle:
        """Install ``compiled``. Raises ``ApplyFailure`` after locking down on error."""
        with _APPLY_LOCK, self._file_lock() as fh:
            if self._current is not None and self._current.digest == compiled.digest:
                logger.info("Policy unchanged (digest %s), re-applying", compiled.digest[:12])
            handle = self._apply_locked(compiled)
            if fh is not None:
                # Counters restart at zero with every apply
                fh.seek(0)
                fh.truncate()
                fh.write(f"{handle.applied_at}\n")
                fh.flush()
            return handle

    def last_applied_at(self) -> float | None:
        """When a policy was last applied, as recorded in the lock file."""
        if self._current is not None:
            return self._current.applied_at
        if self._lock_path is None:
            return None
        try:
            text = self._lock_path.read_text().strip()
        except OSError:
            return None
        try:
            return float(text)
        except ValueError:
            logger.debug("No apply time recorded in %s", self._lock_path)
            return None

    def lockdown(self) -> None:
        """Put the filter into its most restrictive safe state."""
        with _APPLY_LOCK, self._file_lock():
            self._lockdown(self._available_families())
            self._current = None

    def deny_counters(self) -> dict[tuple[Family, str], int]:
        """Packet counts of the terminal REJECT rules, per family and chain."""
        counters: dict[tuple[Family, str], int] = {}
        for family in self._available_families():
            for chain in ("OUTPUT", "INPUT"):
                try:
                    result = self._runner.run(
                        [BINARIES[family], "-L", chain, "-v", "-x", "-n"]
                    )
                except CommandError as exc:
                    logger.warning("Cannot read %s counters: %s", chain, exc.reason)
                    continue
                counters[(family, chain)] = _reject_packets(result.stdout)
        return counters

    def _apply_locked(self, compiled: CompiledPolicy) -> AppliedPolicyHandle:
        families = self._available_families()
        try:
            preserved = self._snapshot()
        except CommandError as exc:
            # Nothing has been touched yet
            raise ApplyFailure("snapshot", exc.reason) from exc

        stage = "flush"
        try:
            self._flush()
            stage = "restore"
            self._restore(preserved)
            stage = "allow sets"
            self._load_sets(compiled, families)
            stage = "core and whitelist rules"
            self._insert(compiled, (Band.EARLY_CORE, Band.WHITELIST), families)
            stage = "deny rules"
            self._insert(compiled, (Band.LOGGED_DENY, Band.DEFAULT_DENY), families)
            stage = "default policies"
            self._set_policies(compiled, families)
        except CommandError as exc:
            logger.error("Apply failed during %s: %s; locking down", stage, exc)
            self._lockdown(families)
            self._current = None
            raise ApplyFailure(stage, exc.reason) from exc
        except BaseException:
            logger.critical("Apply interrupted during %s; locking down", stage)
            self._lockdown(families)
            self._current = None
            raise

        handle = AppliedPolicyHandle(
            digest=compiled.digest,
            name=compiled.name,
            families=families,
            rule_count=sum(1 for r in compiled.rules if r.family in families),
            allowed={f: len(compiled.allow_sets[f]) for f in families},
            preserved=tuple(preserved),
        )
        self._current = handle
        logger.info(
            "Applied policy %s (%d rules, digest %s)",
            compiled.name or "<unnamed>",
            handle.rule_count,
            handle.digest[:12],
        )
        return handle

    def _available_families(self) -> tuple[Family, ...]:
        try:
            result = self._runner.run([BINARIES[Family.V6], "-S"], check=False)
        except CommandError:
            result = None
        if result is None or result.returncode != 0:
            logger.warning("IPv6 packet filter unavailable; applying IPv4 rules only")
            return (Family.V4,)
        return (Family.V4, Family.V6)

    def _snapshot(self) -> list[str]:
        result = self._runner.run(["iptables-save", "-t", "nat"])
        rules = [
            line.strip()
            for line in result.stdout.splitlines()
            if line.startswith("-A") and _CONTAINER_DNS in line
        ]
        logger.debug("Preserving %d container DNS rules", len(rules))
        return rules

    def _flush(self) -> None:
        for family in Family:
            binary = BINARIES[family]
            for table in _TABLES:
                for op in ("-F", "-X"):
                    argv = [binary, "-t", table, op]
                    try:
                        result = self._runner.run(argv, check=False)
                    except CommandError:
                        if family == Family.V4:
                            raise
                        logger.info("Skipping %s: %s not installed", " ".join(argv), binary)
                        continue
                    if result.returncode == 0:
                        continue
                    if family == Family.V6 or "does not exist" in result.stderr:
                        logger.info(
                            "Skipping %s table %s: %s", binary, table, result.stderr.strip()
                        )
                        continue
                    raise CommandError(argv, result.stderr.strip())

        for name in SET_NAMES.values():
            # Absent on first run
            self._runner.run(["ipset", "destroy", name], check=False)

    def _restore(self, preserved: list[str]) -> None:
        if not preserved:
            logger.debug("No container DNS rules to restore")
            return
        logger.info("Restoring %d container DNS rules", len(preserved))
        for chain in _CONTAINER_DNS_CHAINS:
            self._runner.run(["iptables", "-t", "nat", "-N", chain], check=False)
        for line in preserved:
            result = self._runner.run(["iptables", "-t", "nat", *shlex.split(line)], check=False)
            if result.returncode != 0:
                logger.warning("Could not restore DNS rule %r: %s", line, result.stderr.strip())

    def _load_sets(self, compiled: CompiledPolicy, families: tuple[Family, ...]) -> None:
        for family in families:
            allow_set = compiled.allow_sets[family]
            logger.info("Loading %d entries into %s", len(allow_set), allow_set.set_name)
            self._runner.run(["ipset", "restore"], input=allow_set.restore_script())

    def _insert(
        self, compiled: CompiledPolicy, bands: tuple[Band, ...], families: tuple[Family, ...]
    ) -> None:
        for rule in compiled.rules:
            if rule.band in bands and rule.family in families:
                self._runner.run([BINARIES[rule.family], *rule.to_args()])

    def _set_policies(self, compiled: CompiledPolicy, families: tuple[Family, ...]) -> None:
        for family, chain, target in compiled.default_policies:
            if family in families:
                self._runner.run([BINARIES[family], "-P", chain, target])

    def _lockdown(self, families: tuple[Family, ...]) -> None:
        for family in families:
            binary = BINARIES[family]
            steps = [[binary, "-P", chain, "DROP"] for chain in _FILTER_CHAINS]
            steps += [
                [binary, "-F"],
                [binary, "-A", "INPUT", "-i", "lo", "-j", "ACCEPT"],
                [binary, "-A", "OUTPUT", "-o", "lo", "-j", "ACCEPT"],
            ]
            for argv in steps:
                try:
                    self._runner.run(argv)
                except CommandError as exc:
                    logger.critical("Lockdown step failed: %s", exc)
        logger.warning("Packet filter locked down: default DROP, loopback only")

    @contextlib.contextmanager
    def _file_lock(self) -> Iterator[TextIO | None]:
        if self._lock_path is None:
            yield None
            return
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "a+") as fh:
            fcntl.flock(fh, fcntl.LOCK_EX)
            try:
                yield fh
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)


def _reject_packets(listing: str) -> int:
    """Sum packet counters of REJECT rules in ``iptables -L -v -x -n`` output."""
    total = 0
    for line in listing.splitlines():
        fields = line.split()
        if len(fields) > 2 and fields[2] == "REJECT" and fields[0].isdigit():
            total += int(fields[0])
    return total
