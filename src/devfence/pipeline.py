"""Pipeline orchestrator — resolve, fetch, compile, apply, verify.

Each stage owns its output until it hands it to the next one. Per-domain
and per-entry failures are absorbed into the report; provider and apply
failures propagate and end the run before (or instead of) a partial apply.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from devfence.config import DevfenceConfig
from devfence.errors import MalformedEntry, ResolutionFailure
from devfence.firewall.applier import AppliedPolicyHandle, RuleApplier
from devfence.netroute import detect_host_network
from devfence.policy.compiler import CompiledPolicy, PolicyCompiler
from devfence.policy.models import EgressPolicy, Family, IPNetwork, LogLimit
from devfence.probe import VerificationProbe, VerificationReport
from devfence.ranges import RangeFetcher, RangeResult
from devfence.resolve import ResolutionReport, Resolver

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """End-of-run summary."""

    policy_name: str
    resolution: ResolutionReport | None = None
    ranges: list[RangeResult] = field(default_factory=list)
    compiled: CompiledPolicy | None = None
    handle: AppliedPolicyHandle | None = None
    verification: VerificationReport | None = None

    @property
    def malformed(self) -> list[MalformedEntry]:
        entries = list(self.resolution.malformed) if self.resolution else []
        for r in self.ranges:
            entries.extend(r.malformed)
        return entries

    @property
    def failures(self) -> list[ResolutionFailure]:
        return self.resolution.failures if self.resolution else []

    def allowed(self, family: Family) -> int:
        if self.compiled is None:
            return 0
        return len(self.compiled.allow_sets[family])

    @property
    def ok(self) -> bool:
        """Applied and confirmed by the fatal probe; an unverified run is not ok."""
        if self.handle is None or self.verification is None:
            return False
        return self.verification.ok


class EgressPipeline:
    """Wires the stages together with their failure policies."""

    def __init__(
        self,
        config: DevfenceConfig | None = None,
        resolver: Resolver | None = None,
        fetcher: RangeFetcher | None = None,
        applier: RuleApplier | None = None,
        probe_factory: Callable[[EgressPolicy], VerificationProbe] | None = None,
        host_network_detector: Callable[[], IPNetwork | None] = detect_host_network,
    ) -> None:
        self._config = config or DevfenceConfig()
        cfg = self._config
        self._resolver = resolver or Resolver(
            timeout=cfg.dns_timeout,
            retries=cfg.retries,
            backoff=cfg.backoff,
            max_workers=cfg.dns_workers,
        )
        self._fetcher = fetcher or RangeFetcher(
            timeout=cfg.http_timeout, retries=cfg.retries, backoff=cfg.backoff
        )
        self._applier = applier or RuleApplier(lock_path=cfg.lock_path)
        self._compiler = PolicyCompiler(LogLimit(cfg.log_burst, cfg.log_per_minute))
        self._probe_factory = probe_factory or self._default_probe
        self._detect_host_network = host_network_detector

    def plan(
        self, policy: EgressPolicy, host_network: IPNetwork | None = None
    ) -> RunReport:
        """Resolve and compile without touching the packet filter.

        Raises ``ProviderUnavailable`` if any range provider fails.
        """
        report, _ = self._compile(policy, host_network)
        return report

    def run(
        self,
        policy: EgressPolicy,
        host_network: IPNetwork | None = None,
        verify: bool = True,
    ) -> RunReport:
        """Full apply cycle. Raises ``ProviderUnavailable`` or ``ApplyFailure``."""
        if host_network is None:
            host_network = self._detect_host_network()
        report, compiled = self._compile(policy, host_network)

        report.handle = self._applier.apply(compiled)
        if verify:
            probe = self._probe_factory(policy)
            report.verification = probe.verify(report.handle)
        return report

    def _compile(
        self, policy: EgressPolicy, host_network: IPNetwork | None
    ) -> tuple[RunReport, CompiledPolicy]:
        report = RunReport(policy_name=policy.name)
        # Fatal stage first so a dead provider aborts before any DNS work
        report.ranges = self._fetcher.fetch_all(policy.providers)
        report.resolution = self._resolver.resolve_all(policy.specs)

        compiled = self._compiler.compile(
            policy.all_specs,
            report.resolution.endpoints,
            report.ranges,
            host_network=host_network,
            ports=policy.ports,
            allow_ssh=policy.allow_ssh,
            name=policy.name,
        )
        report.compiled = compiled
        return report, compiled

    def _default_probe(self, policy: EgressPolicy) -> VerificationProbe:
        return VerificationProbe(
            policy.probes,
            blocked_timeout=self._config.blocked_probe_timeout,
            allowed_timeout=self._config.allowed_probe_timeout,
        )
