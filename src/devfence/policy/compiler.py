"""Policy compiler — turns resolved addresses into an ordered packet-filter rule set.

Rules are partitioned into four bands that are always emitted in order:

    EARLY_CORE    loopback, DNS, SSH, established/related, host network
    WHITELIST     outbound TCP to allowed ports, destination in the allow ipset
    LOGGED_DENY   rate-limited LOG of whatever reaches this point
    DEFAULT_DENY  terminal REJECT

Nothing in WHITELIST can be shadowed by DEFAULT_DENY and nothing reaches
DEFAULT_DENY without passing LOGGED_DENY first. Compilation is pure and
deterministic: identical inputs produce byte-identical ``render()`` output.
"""

from __future__ import annotations

import enum
import hashlib
import ipaddress
import logging
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field

from devfence.policy.models import DomainSpec, Family, IPNetwork, LogLimit, SpecKind
from devfence.ranges import RangeResult
from devfence.resolve import ResolvedEndpoint

logger = logging.getLogger(__name__)

SET_NAMES = {Family.V4: "allowed-domains", Family.V6: "allowed-domains-v6"}
BINARIES = {Family.V4: "iptables", Family.V6: "ip6tables"}
LOG_PREFIXES = {
    (Family.V4, "OUTPUT"): "FIREWALL_BLOCK_OUT: ",
    (Family.V4, "INPUT"): "FIREWALL_BLOCK_IN: ",
    (Family.V6, "OUTPUT"): "FIREWALL_BLOCK_OUT_V6: ",
    (Family.V6, "INPUT"): "FIREWALL_BLOCK_IN_V6: ",
}
_REJECT_WITH = {Family.V4: "icmp-admin-prohibited", Family.V6: "icmp6-adm-prohibited"}
_FILTER_CHAINS = ("INPUT", "FORWARD", "OUTPUT")


class Band(enum.IntEnum):
    """Strictly ordered rule groups."""

    EARLY_CORE = 1
    WHITELIST = 2
    LOGGED_DENY = 3
    DEFAULT_DENY = 4


class RuleAction(enum.Enum):
    ACCEPT = "ACCEPT"
    DROP = "DROP"
    REJECT = "REJECT"
    LOG = "LOG"


@dataclass(frozen=True)
class CompiledRule:
    """One rule appended to a filter chain."""

    band: Band
    family: Family
    chain: str
    action: RuleAction
    protocol: str = ""
    dport: int | None = None
    sport: int | None = None
    in_iface: str = ""
    out_iface: str = ""
    source: str = ""
    destination: str = ""
    states: tuple[str, ...] = ()
    match_set: str = ""
    limit: LogLimit | None = None
    log_prefix: str = ""
    reject_with: str = ""

    def to_args(self) -> list[str]:
        """Arguments for iptables/ip6tables (without the binary)."""
        args = ["-A", self.chain]
        if self.in_iface:
            args += ["-i", self.in_iface]
        if self.out_iface:
            args += ["-o", self.out_iface]
        if self.source:
            args += ["-s", self.source]
        if self.destination:
            args += ["-d", self.destination]
        if self.protocol:
            args += ["-p", self.protocol]
        if self.sport is not None:
            args += ["--sport", str(self.sport)]
        if self.dport is not None:
            args += ["--dport", str(self.dport)]
        if self.states:
            args += ["-m", "conntrack", "--ctstate", ",".join(self.states)]
        if self.match_set:
            args += ["-m", "set", "--match-set", self.match_set, "dst"]
        if self.limit is not None:
            args += [
                "-m",
                "limit",
                "--limit",
                f"{self.limit.per_minute}/min",
                "--limit-burst",
                str(self.limit.burst),
            ]
        args += ["-j", self.action.value]
        if self.log_prefix:
            args += ["--log-prefix", self.log_prefix, "--log-level", "4"]
        if self.reject_with:
            args += ["--reject-with", self.reject_with]
        return args

    def render(self) -> str:
        return f"{BINARIES[self.family]} {shlex.join(self.to_args())}"


@dataclass(frozen=True)
class AllowSet:
    """Family-partitioned allow-list, materialized as an ipset ``hash:net``."""

    family: Family
    entries: tuple[IPNetwork, ...] = ()

    @property
    def set_name(self) -> str:
        return SET_NAMES[self.family]

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.render().encode()).hexdigest()

    def __len__(self) -> int:
        return len(self.entries)

    def restore_script(self) -> str:
        """Input for ``ipset restore``: create the set, then add every entry."""
        return self.render() + "\n"

    def render(self) -> str:
        inet = "inet" if self.family == Family.V4 else "inet6"
        lines = [f"create {self.set_name} hash:net family {inet} -exist"]
        lines += [f"add {self.set_name} {_entry(net)} -exist" for net in self.entries]
        return "\n".join(lines)

    @classmethod
    def build(cls, family: Family, networks: Iterable[IPNetwork]) -> AllowSet:
        unique = {n for n in networks if Family.of(n) == family}
        return cls(family=family, entries=tuple(sorted(unique)))


@dataclass(frozen=True)
class CompiledPolicy:
    """The full, ordered rule set ready to be applied."""

    rules: tuple[CompiledRule, ...]
    allow_sets: dict[Family, AllowSet] = field(hash=False)
    name: str = ""

    @property
    def default_policies(self) -> tuple[tuple[Family, str, str], ...]:
        return tuple((fam, chain, "DROP") for fam in Family for chain in _FILTER_CHAINS)

    def rules_in(self, band: Band, family: Family | None = None) -> tuple[CompiledRule, ...]:
        return tuple(
            r for r in self.rules if r.band == band and (family is None or r.family == family)
        )

    def render(self) -> str:
        """Canonical text form; the basis of the content digest."""
        lines: list[str] = []
        for family in Family:
            lines.append(f"# ipset {family.value}")
            lines.append(self.allow_sets[family].render())
        for band in Band:
            lines.append(f"# {band.name.lower()}")
            lines.extend(r.render() for r in self.rules_in(band))
        lines.append("# default policies")
        lines.extend(
            f"{BINARIES[fam]} -P {chain} {target}" for fam, chain, target in self.default_policies
        )
        return "\n".join(lines) + "\n"

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.render().encode()).hexdigest()


class PolicyCompiler:
    """Merges resolved endpoints, fetched ranges and static rules into bands."""

    def __init__(self, log_limit: LogLimit | None = None) -> None:
        self._log_limit = log_limit or LogLimit()

    def compile(
        self,
        specs: Iterable[DomainSpec],
        endpoints: Iterable[ResolvedEndpoint],
        ranges: Iterable[RangeResult],
        host_network: IPNetwork | None = None,
        ports: tuple[int, ...] = (80, 443),
        allow_ssh: bool = True,
        name: str = "",
    ) -> CompiledPolicy:
        specs = tuple(specs)
        networks = self._allowed_networks(specs, endpoints, ranges)
        allow_sets = {fam: AllowSet.build(fam, networks) for fam in Family}

        rules: list[CompiledRule] = []
        for family in Family:
            rules += _early_core(family, allow_ssh, host_network)
            rules += _whitelist(family, sorted(set(ports)))
            rules += _logged_deny(family, self._log_limit)
            rules += _default_deny(family)

        # Stable sort: bands first, emission order within a band
        ordered = tuple(sorted(rules, key=lambda r: r.band))
        compiled = CompiledPolicy(rules=ordered, allow_sets=allow_sets, name=name)
        logger.info(
            "Compiled %d rules (%d IPv4, %d IPv6 allowed entries), digest %s",
            len(ordered),
            len(allow_sets[Family.V4]),
            len(allow_sets[Family.V6]),
            compiled.digest[:12],
        )
        return compiled

    @staticmethod
    def _allowed_networks(
        specs: tuple[DomainSpec, ...],
        endpoints: Iterable[ResolvedEndpoint],
        ranges: Iterable[RangeResult],
    ) -> list[IPNetwork]:
        domains = {s.name for s in specs if s.kind == SpecKind.EXACT_DOMAIN}
        providers = {s.name for s in specs if s.kind == SpecKind.CIDR_RANGE_SOURCE}

        networks: list[IPNetwork] = []
        orphans = 0
        for ep in endpoints:
            if ep.source not in domains:
                orphans += 1
                continue
            networks.append(ipaddress.ip_network(ep.address))
        for result in ranges:
            if result.provider not in providers:
                orphans += len(result.networks)
                continue
            networks.extend(result.networks)
        for spec in specs:
            if spec.kind == SpecKind.STATIC_CIDR:
                networks.append(ipaddress.ip_network(spec.name, strict=False))

        if orphans:
            logger.info("Purged %d entries whose source is no longer in the policy", orphans)
        return networks


def _entry(net: IPNetwork) -> str:
    if net.prefixlen == net.max_prefixlen:
        return str(net.network_address)
    return str(net)


def _early_core(
    family: Family, allow_ssh: bool, host_network: IPNetwork | None
) -> list[CompiledRule]:
    core = Band.EARLY_CORE
    accept = RuleAction.ACCEPT
    rules = [
        CompiledRule(core, family, "INPUT", accept, in_iface="lo"),
        CompiledRule(core, family, "OUTPUT", accept, out_iface="lo"),
        CompiledRule(core, family, "OUTPUT", accept, protocol="udp", dport=53),
        CompiledRule(core, family, "INPUT", accept, protocol="udp", sport=53),
        CompiledRule(core, family, "OUTPUT", accept, protocol="tcp", dport=53),
    ]
    if allow_ssh:
        rules += [
            CompiledRule(core, family, "OUTPUT", accept, protocol="tcp", dport=22),
            CompiledRule(
                core, family, "INPUT", accept, protocol="tcp", sport=22, states=("ESTABLISHED",)
            ),
        ]
    rules += [
        CompiledRule(core, family, "INPUT", accept, states=("ESTABLISHED", "RELATED")),
        CompiledRule(core, family, "OUTPUT", accept, states=("ESTABLISHED", "RELATED")),
    ]
    if host_network is not None and Family.of(host_network) == family:
        rules += [
            CompiledRule(core, family, "INPUT", accept, source=str(host_network)),
            CompiledRule(core, family, "OUTPUT", accept, destination=str(host_network)),
        ]
    return rules


def _whitelist(family: Family, ports: list[int]) -> list[CompiledRule]:
    return [
        CompiledRule(
            Band.WHITELIST,
            family,
            "OUTPUT",
            RuleAction.ACCEPT,
            protocol="tcp",
            dport=port,
            match_set=SET_NAMES[family],
        )
        for port in ports
    ]


def _logged_deny(family: Family, limit: LogLimit) -> list[CompiledRule]:
    return [
        CompiledRule(
            Band.LOGGED_DENY,
            family,
            chain,
            RuleAction.LOG,
            limit=limit,
            log_prefix=LOG_PREFIXES[(family, chain)],
        )
        for chain in ("OUTPUT", "INPUT")
    ]


def _default_deny(family: Family) -> list[CompiledRule]:
    return [
        CompiledRule(
            Band.DEFAULT_DENY,
            family,
            chain,
            RuleAction.REJECT,
            reject_with=_REJECT_WITH[family],
        )
        for chain in ("OUTPUT", "INPUT")
    ]
