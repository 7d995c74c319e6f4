"""Post-apply verification probes.

A blocked target that turns out reachable means the security boundary does
not hold; that is fatal. An allowed target that is unreachable is most
likely a DNS or connectivity problem and only produces a warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from devfence.errors import VerificationFailure
from devfence.firewall.applier import AppliedPolicyHandle
from devfence.policy.models import ProbeTargets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    name: str
    url: str
    expect_reachable: bool
    reachable: bool
    detail: str = ""

    @property
    def passed(self) -> bool:
        return self.reachable == self.expect_reachable

    @property
    def fatal(self) -> bool:
        # Only a reachable blocked target breaks the policy contract
        return not self.passed and not self.expect_reachable


@dataclass
class VerificationReport:
    """Pass/fail per probe."""

    results: list[ProbeResult] = field(default_factory=list)

    @property
    def fatal_failures(self) -> list[VerificationFailure]:
        return [VerificationFailure(r.name, r.url, fatal=True) for r in self.results if r.fatal]

    @property
    def warnings(self) -> list[VerificationFailure]:
        return [
            VerificationFailure(r.name, r.url, fatal=False)
            for r in self.results
            if not r.passed and not r.fatal
        ]

    @property
    def ok(self) -> bool:
        return not self.fatal_failures


class VerificationProbe:
    """Issues HTTPS requests against known-blocked and known-allowed targets."""

    def __init__(
        self,
        targets: ProbeTargets | None = None,
        blocked_timeout: float = 3.0,
        allowed_timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._targets = targets or ProbeTargets()
        self._blocked_timeout = blocked_timeout
        self._allowed_timeout = allowed_timeout
        self._transport = transport

    def verify(self, handle: AppliedPolicyHandle | None = None) -> VerificationReport:
        if handle is not None:
            logger.info("Verifying policy %s (digest %s)", handle.name, handle.digest[:12])
        report = VerificationReport()

        report.results.append(
            self._probe("blocked", self._targets.blocked, False, self._blocked_timeout)
        )
        for url in self._targets.allowed:
            report.results.append(self._probe("allowed", url, True, self._allowed_timeout))

        for failure in report.fatal_failures:
            logger.critical("Firewall verification failed: %s", failure)
        for failure in report.warnings:
            logger.warning("%s (connectivity may be limited)", failure)
        return report

    def _probe(self, name: str, url: str, expect_reachable: bool, timeout: float) -> ProbeResult:
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.get(url)
        except httpx.HTTPError as exc:
            detail = exc.__class__.__name__
            reachable = False
        else:
            # Any HTTP answer at all means the packet got through
            detail = f"HTTP {response.status_code}"
            reachable = True

        result = ProbeResult(name, url, expect_reachable, reachable, detail)
        logger.info(
            "[%s] %s: %s (%s)", name, url, "PASSED" if result.passed else "FAILED", detail
        )
        return result
