"""Domain resolution for the allow-list.

Turns each exact domain into the set of its current A and AAAA addresses
using dnspython. Failures are isolated per domain (a domain that resolves to
nothing contributes nothing) and per record (a malformed answer is dropped
without discarding its siblings). Wildcards are never resolved.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import dns.exception
import dns.resolver

from devfence.errors import MalformedEntry, ResolutionFailure
from devfence.policy.models import DomainSpec, Family, IPAddress, SpecKind

logger = logging.getLogger(__name__)

_RDTYPES: tuple[tuple[str, Family], ...] = (("A", Family.V4), ("AAAA", Family.V6))


@dataclass(frozen=True)
class ResolvedEndpoint:
    """One address produced by resolving one allow-list entry."""

    source: str
    family: Family
    address: IPAddress
    ttl: int | None = field(default=None, compare=False)

    @classmethod
    def build(cls, source: str, address: IPAddress, ttl: int | None = None) -> ResolvedEndpoint:
        return cls(source=source, family=Family.of(address), address=address, ttl=ttl)

    @property
    def sort_key(self) -> tuple[str, int, int]:
        return (self.source, self.address.version, int(self.address))


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of resolving a single domain."""

    domain: str
    endpoints: tuple[ResolvedEndpoint, ...] = ()
    malformed: tuple[MalformedEntry, ...] = ()
    failure: ResolutionFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def ttl(self) -> int | None:
        ttls = [e.ttl for e in self.endpoints if e.ttl is not None]
        return min(ttls) if ttls else None


@dataclass
class ResolutionReport:
    """Aggregated outcome of resolving a whole allow-list."""

    results: dict[str, ResolutionResult] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def endpoints(self) -> tuple[ResolvedEndpoint, ...]:
        return tuple(
            sorted(
                (e for r in self.results.values() for e in r.endpoints),
                key=lambda e: e.sort_key,
            )
        )

    @property
    def failures(self) -> list[ResolutionFailure]:
        return [r.failure for r in self.results.values() if r.failure is not None]

    @property
    def malformed(self) -> list[MalformedEntry]:
        return [m for r in self.results.values() for m in r.malformed]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results.values() if r.ok)


class Resolver:
    """Resolves exact domains to ``ResolvedEndpoint`` sets.

    A and AAAA are queried independently, each with a bounded number of
    retries and exponential backoff on timeouts. Domains are resolved
    concurrently on a bounded thread pool; results are gathered into a
    mapping before ``resolve_all`` returns. Successful results are cached
    in memory for the lowest TTL among their records.
    """

    def __init__(
        self,
        timeout: float = 3.0,
        retries: int = 2,
        backoff: float = 0.5,
        max_workers: int = 8,
        dns_resolver: dns.resolver.Resolver | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._timeout = timeout
        self._retries = retries
        self._backoff = backoff
        self._max_workers = max_workers
        self._dns = dns_resolver
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, tuple[float, ResolutionResult]] = {}
        self._cache_lock = threading.Lock()

    def resolve(self, domain: str) -> ResolutionResult:
        """Resolve one domain. Never raises for DNS-level failures."""
        cached = self._cached(domain)
        if cached is not None:
            logger.debug("DNS cache hit for %s", domain)
            return cached

        endpoints: list[ResolvedEndpoint] = []
        malformed: list[MalformedEntry] = []
        errors: list[str] = []

        for rdtype, family in _RDTYPES:
            try:
                answers, ttl = self._query_with_retry(domain, rdtype)
            except dns.exception.DNSException as exc:
                errors.append(f"{rdtype}: {exc.__class__.__name__}")
                continue
            for raw in answers:
                address = _parse_address(raw, family)
                if address is None:
                    entry = MalformedEntry(domain, raw)
                    logger.warning("Invalid %s record for %s: %s (skipping)", rdtype, domain, raw)
                    malformed.append(entry)
                    continue
                endpoints.append(ResolvedEndpoint.build(domain, address, ttl))

        unique = tuple(sorted(set(endpoints), key=lambda e: e.sort_key))
        if not unique:
            failure = ResolutionFailure(domain, "; ".join(errors))
            logger.warning("%s (skipping)", failure)
            return ResolutionResult(domain=domain, malformed=tuple(malformed), failure=failure)

        result = ResolutionResult(domain=domain, endpoints=unique, malformed=tuple(malformed))
        for ep in unique:
            logger.debug("Resolved %s -> %s", domain, ep.address)
        self._store(result)
        return result

    def resolve_all(self, specs: Iterable[DomainSpec]) -> ResolutionReport:
        """Resolve every exact domain in ``specs`` concurrently.

        Wildcard specs are reported as skipped; CIDR and provider specs are
        not DNS names and are ignored here.
        """
        report = ResolutionReport()
        domains: list[str] = []
        for spec in specs:
            if spec.kind == SpecKind.WILDCARD_DOMAIN:
                logger.warning(
                    "Wildcard domain %s cannot be enforced at the packet filter; "
                    "list explicit names instead (skipping)",
                    spec.name,
                )
                report.skipped.append(spec.name)
            elif spec.kind == SpecKind.EXACT_DOMAIN and spec.name not in domains:
                domains.append(spec.name)

        if not domains:
            return report

        workers = max(1, min(self._max_workers, len(domains)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolve") as pool:
            results = list(pool.map(self.resolve, domains))

        for domain, result in zip(domains, results):
            report.results[domain] = result

        logger.info(
            "Resolved %d/%d domains (%d addresses)",
            report.succeeded,
            len(domains),
            len(report.endpoints),
        )
        return report

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def _query_with_retry(self, domain: str, rdtype: str) -> tuple[list[str], int | None]:
        attempt = 0
        while True:
            try:
                return self._query(domain, rdtype)
            except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
                return [], None
            except (dns.exception.Timeout, dns.resolver.NoNameservers) as exc:
                if attempt >= self._retries:
                    raise
                delay = self._backoff * (2**attempt)
                logger.debug(
                    "%s lookup for %s failed (%s), retrying in %.1fs",
                    rdtype,
                    domain,
                    exc.__class__.__name__,
                    delay,
                )
                self._sleep(delay)
                attempt += 1

    def _query(self, domain: str, rdtype: str) -> tuple[list[str], int | None]:
        """Issue a single query. Returns raw record texts and the RRset TTL."""
        with self._cache_lock:
            if self._dns is None:
                # Reads /etc/resolv.conf, so deferred until the first query
                self._dns = dns.resolver.Resolver()
            resolver = self._dns
        answer = resolver.resolve(domain, rdtype, lifetime=self._timeout)
        ttl = answer.rrset.ttl if answer.rrset is not None else None
        return [r.to_text() for r in answer], ttl

    def _cached(self, domain: str) -> ResolutionResult | None:
        with self._cache_lock:
            entry = self._cache.get(domain)
            if entry is None:
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                del self._cache[domain]
                return None
            return result

    def _store(self, result: ResolutionResult) -> None:
        ttl = result.ttl
        if not ttl:
            return
        with self._cache_lock:
            self._cache[result.domain] = (self._clock() + ttl, result)


def _parse_address(raw: str, family: Family) -> IPAddress | None:
    try:
        address = ipaddress.ip_address(raw.strip())
    except ValueError:
        return None
    if Family.of(address) != family:
        return None
    return address
