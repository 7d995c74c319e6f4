"""Policy data models — immutable dataclasses used across the entire codebase."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class SpecKind(enum.Enum):
    """How an allow-list entry is turned into addresses."""

    EXACT_DOMAIN = "exact"
    WILDCARD_DOMAIN = "wildcard"
    CIDR_RANGE_SOURCE = "provider"
    STATIC_CIDR = "cidr"


class Family(enum.Enum):
    """Address family of an endpoint, set or rule."""

    V4 = "v4"
    V6 = "v6"

    @classmethod
    def of(cls, value: IPAddress | IPNetwork) -> Family:
        return cls.V4 if value.version == 4 else cls.V6


@dataclass(frozen=True)
class DomainSpec:
    """A single entry of the declarative allow-list."""

    name: str
    kind: SpecKind = SpecKind.EXACT_DOMAIN

    @classmethod
    def parse(cls, entry: str) -> DomainSpec:
        """Classify a raw allow-list string."""
        name = entry.strip().lower().rstrip(".")
        if "*" in name:
            return cls(name=name, kind=SpecKind.WILDCARD_DOMAIN)
        try:
            ipaddress.ip_network(name, strict=False)
        except ValueError:
            return cls(name=name, kind=SpecKind.EXACT_DOMAIN)
        return cls(name=name, kind=SpecKind.STATIC_CIDR)


@dataclass(frozen=True)
class RangeProvider:
    """An HTTP endpoint publishing bulk CIDR ranges as keyed JSON arrays."""

    name: str
    url: str
    keys: tuple[str, ...] = ()

    @property
    def spec(self) -> DomainSpec:
        return DomainSpec(name=self.name, kind=SpecKind.CIDR_RANGE_SOURCE)


@dataclass(frozen=True)
class ProbeTargets:
    """URLs used to verify the applied policy."""

    blocked: str = "https://example.com"
    allowed: tuple[str, ...] = (
        "https://api.github.com/zen",
        "https://registry.npmjs.org",
    )


@dataclass(frozen=True)
class LogLimit:
    """Burst + steady-state rate for audit logging of denied traffic."""

    burst: int = 5
    per_minute: int = 10


@dataclass(frozen=True)
class EgressPolicy:
    """A complete egress policy definition."""

    name: str
    specs: tuple[DomainSpec, ...] = ()
    providers: tuple[RangeProvider, ...] = ()
    ports: tuple[int, ...] = (80, 443)
    allow_ssh: bool = True
    probes: ProbeTargets = field(default_factory=ProbeTargets)
    description: str = ""
    inherit: tuple[str, ...] = ()

    @property
    def all_specs(self) -> tuple[DomainSpec, ...]:
        """Domain specs plus one CIDR_RANGE_SOURCE spec per provider."""
        return self.specs + tuple(p.spec for p in self.providers)

    def specs_of(self, kind: SpecKind) -> tuple[DomainSpec, ...]:
        return tuple(s for s in self.specs if s.kind == kind)
