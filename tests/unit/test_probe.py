"""Tests for post-apply verification probes."""

from __future__ import annotations

import httpx

from devfence.policy.models import ProbeTargets
from devfence.probe import VerificationProbe

_TARGETS = ProbeTargets(
    blocked="https://example.com",
    allowed=("https://api.github.com/zen", "https://registry.npmjs.org"),
)


def _transport(reachable: set[str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host in reachable:
            return httpx.Response(200, text="ok")
        raise httpx.ConnectError("rejected", request=request)

    return httpx.MockTransport(handler)


def test_all_probes_pass():
    probe = VerificationProbe(_TARGETS, transport=_transport({"api.github.com", "registry.npmjs.org"}))
    report = probe.verify()
    assert report.ok
    assert all(r.passed for r in report.results)
    assert report.warnings == []


def test_reachable_blocked_target_is_fatal():
    probe = VerificationProbe(
        _TARGETS, transport=_transport({"example.com", "api.github.com", "registry.npmjs.org"})
    )
    report = probe.verify()
    assert not report.ok
    [failure] = report.fatal_failures
    assert failure.fatal
    assert failure.url == "https://example.com"


def test_unreachable_allowed_target_is_only_a_warning():
    probe = VerificationProbe(_TARGETS, transport=_transport({"api.github.com"}))
    report = probe.verify()
    assert report.ok
    [warning] = report.warnings
    assert not warning.fatal
    assert warning.url == "https://registry.npmjs.org"


def test_any_http_status_counts_as_reachable():
    def handler(request):
        return httpx.Response(503)

    probe = VerificationProbe(ProbeTargets(allowed=()), transport=httpx.MockTransport(handler))
    report = probe.verify()
    assert report.results[0].reachable
    assert report.results[0].detail == "HTTP 503"
    assert not report.ok


def test_timeout_counts_as_unreachable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    probe = VerificationProbe(ProbeTargets(allowed=()), transport=httpx.MockTransport(handler))
    report = probe.verify()
    assert report.ok
    assert report.results[0].detail == "ConnectTimeout"
