"""Shared test fixtures."""

from __future__ import annotations

import ipaddress
from pathlib import Path

import pytest

from devfence.firewall.runner import CommandError, CommandResult
from devfence.policy.models import DomainSpec, EgressPolicy, RangeProvider, SpecKind
from devfence.ranges import RangeResult
from devfence.resolve import ResolvedEndpoint


class FakeRunner:
    """Records every command; fails those whose argv starts with a configured prefix."""

    def __init__(self, outputs: dict[tuple[str, ...], str] | None = None) -> None:
        self.calls: list[tuple[tuple[str, ...], str | None]] = []
        self.outputs = outputs or {}
        self.fail_prefixes: list[tuple[str, ...]] = []
        self.missing_binaries: set[str] = set()

    @property
    def argvs(self) -> list[tuple[str, ...]]:
        return [argv for argv, _ in self.calls]

    def run(self, argv, input=None, check=True) -> CommandResult:
        argv = tuple(argv)
        self.calls.append((argv, input))
        if argv[0] in self.missing_binaries:
            raise CommandError(list(argv), "FileNotFoundError")
        if any(argv[: len(p)] == p for p in self.fail_prefixes):
            if check:
                raise CommandError(list(argv), "boom")
            return CommandResult(argv=argv, returncode=1, stderr="boom")
        stdout = next((out for p, out in self.outputs.items() if argv[: len(p)] == p), "")
        return CommandResult(argv=argv, returncode=0, stdout=stdout)


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def simple_policy_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "simple_policy.yaml"


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner(
        outputs={
            ("iptables-save", "-t", "nat"): (
                "*nat\n"
                ":DOCKER_OUTPUT - [0:0]\n"
                "-A OUTPUT -d 127.0.0.11/32 -j DOCKER_OUTPUT\n"
                "-A DOCKER_OUTPUT -d 127.0.0.11/32 -p udp -m udp --dport 53 "
                "-j DNAT --to-destination 127.0.0.11:45321\n"
                "-A POSTROUTING -d 10.0.0.0/8 -j MASQUERADE\n"
                "COMMIT\n"
            ),
        }
    )


@pytest.fixture
def github() -> RangeProvider:
    return RangeProvider(name="github", url="https://api.github.com/meta", keys=("web", "api", "git"))


@pytest.fixture
def sample_policy(github: RangeProvider) -> EgressPolicy:
    return EgressPolicy(
        name="sample",
        specs=(
            DomainSpec("api.anthropic.com"),
            DomainSpec("pypi.org"),
            DomainSpec("*.vo.msecnd.net", SpecKind.WILDCARD_DOMAIN),
            DomainSpec("203.0.113.0/24", SpecKind.STATIC_CIDR),
        ),
        providers=(github,),
    )


@pytest.fixture
def sample_endpoints() -> list[ResolvedEndpoint]:
    return [
        ResolvedEndpoint.build("pypi.org", ipaddress.ip_address("151.101.0.223")),
        ResolvedEndpoint.build("api.anthropic.com", ipaddress.ip_address("160.79.104.10")),
        ResolvedEndpoint.build("api.anthropic.com", ipaddress.ip_address("2607:6bc0::10")),
    ]


@pytest.fixture
def sample_ranges() -> list[RangeResult]:
    return [
        RangeResult(
            provider="github",
            networks=(
                ipaddress.ip_network("140.82.112.0/20"),
                ipaddress.ip_network("192.30.252.0/22"),
            ),
        )
    ]


@pytest.fixture
def runner_factory():
    return FakeRunner
