"""Tests for the policy compiler."""

from __future__ import annotations

import ipaddress

from devfence.policy.compiler import Band, PolicyCompiler, RuleAction
from devfence.policy.models import Family, LogLimit
from devfence.ranges import RangeResult
from devfence.resolve import ResolvedEndpoint


def _compile(policy, endpoints, ranges, **kwargs):
    return PolicyCompiler().compile(
        policy.all_specs, endpoints, ranges, ports=policy.ports, name=policy.name, **kwargs
    )


def test_bands_strictly_ordered(sample_policy, sample_endpoints, sample_ranges):
    compiled = _compile(sample_policy, sample_endpoints, sample_ranges)
    bands = [r.band for r in compiled.rules]
    assert bands == sorted(bands)
    assert set(bands) == set(Band)


def test_every_deny_is_logged_first(sample_policy, sample_endpoints, sample_ranges):
    compiled = _compile(sample_policy, sample_endpoints, sample_ranges)
    for family in Family:
        rules = [r for r in compiled.rules if r.family == family]
        for chain in ("INPUT", "OUTPUT"):
            chain_rules = [r for r in rules if r.chain == chain]
            assert chain_rules[-1].action == RuleAction.REJECT
            assert chain_rules[-2].action == RuleAction.LOG


def test_allow_sets_partitioned_by_family(sample_policy, sample_endpoints, sample_ranges):
    compiled = _compile(sample_policy, sample_endpoints, sample_ranges)
    v4 = [str(n) for n in compiled.allow_sets[Family.V4].entries]
    v6 = [str(n) for n in compiled.allow_sets[Family.V6].entries]
    assert v4 == [
        "140.82.112.0/20",
        "151.101.0.223/32",
        "160.79.104.10/32",
        "192.30.252.0/22",
        "203.0.113.0/24",
    ]
    assert v6 == ["2607:6bc0::10/128"]


def test_compile_is_deterministic(sample_policy, sample_endpoints, sample_ranges):
    first = _compile(sample_policy, sample_endpoints, sample_ranges)
    second = _compile(sample_policy, list(reversed(sample_endpoints)), sample_ranges)
    assert first.render() == second.render()
    assert first.digest == second.digest


def test_changed_answers_change_digest(sample_policy, sample_endpoints, sample_ranges):
    first = _compile(sample_policy, sample_endpoints, sample_ranges)
    extra = [*sample_endpoints, ResolvedEndpoint.build("pypi.org", ipaddress.ip_address("151.101.64.223"))]
    second = _compile(sample_policy, extra, sample_ranges)
    assert first.digest != second.digest


def test_wildcard_contributes_nothing(sample_policy, sample_endpoints, sample_ranges):
    compiled = _compile(sample_policy, sample_endpoints, sample_ranges)
    assert "msecnd" not in compiled.render()


def test_orphaned_endpoints_purged(sample_policy, sample_endpoints, sample_ranges):
    orphan = ResolvedEndpoint.build("removed.example", ipaddress.ip_address("198.51.100.7"))
    stale = RangeResult(provider="gitlab", networks=(ipaddress.ip_network("198.51.100.0/24"),))
    compiled = _compile(sample_policy, [*sample_endpoints, orphan], [*sample_ranges, stale])
    assert "198.51.100" not in compiled.render()


def test_whitelist_rules_per_port(sample_policy, sample_endpoints, sample_ranges):
    compiled = _compile(sample_policy, sample_endpoints, sample_ranges)
    v4 = compiled.rules_in(Band.WHITELIST, Family.V4)
    assert [r.render() for r in v4] == [
        "iptables -A OUTPUT -p tcp --dport 80 -m set --match-set allowed-domains dst -j ACCEPT",
        "iptables -A OUTPUT -p tcp --dport 443 -m set --match-set allowed-domains dst -j ACCEPT",
    ]
    v6 = compiled.rules_in(Band.WHITELIST, Family.V6)
    assert all(r.match_set == "allowed-domains-v6" for r in v6)


def test_logged_deny_prefixes_and_limit(sample_policy, sample_endpoints, sample_ranges):
    compiled = PolicyCompiler(LogLimit(burst=5, per_minute=10)).compile(
        sample_policy.all_specs, sample_endpoints, sample_ranges
    )
    rendered = [r.render() for r in compiled.rules_in(Band.LOGGED_DENY)]
    assert rendered[0] == (
        "iptables -A OUTPUT -m limit --limit 10/min --limit-burst 5 "
        "-j LOG --log-prefix 'FIREWALL_BLOCK_OUT: ' --log-level 4"
    )
    prefixes = [r.log_prefix for r in compiled.rules_in(Band.LOGGED_DENY)]
    assert prefixes == [
        "FIREWALL_BLOCK_OUT: ",
        "FIREWALL_BLOCK_IN: ",
        "FIREWALL_BLOCK_OUT_V6: ",
        "FIREWALL_BLOCK_IN_V6: ",
    ]


def test_host_network_only_for_its_family(sample_policy, sample_endpoints, sample_ranges):
    net = ipaddress.ip_network("172.17.0.0/24")
    compiled = _compile(sample_policy, sample_endpoints, sample_ranges, host_network=net)
    v4 = [r.render() for r in compiled.rules_in(Band.EARLY_CORE, Family.V4)]
    assert "iptables -A OUTPUT -d 172.17.0.0/24 -j ACCEPT" in v4
    assert "iptables -A INPUT -s 172.17.0.0/24 -j ACCEPT" in v4
    v6 = [r.render() for r in compiled.rules_in(Band.EARLY_CORE, Family.V6)]
    assert not any("172.17" in line for line in v6)


def test_ssh_can_be_disabled(sample_policy, sample_endpoints, sample_ranges):
    compiled = PolicyCompiler().compile(
        sample_policy.all_specs, sample_endpoints, sample_ranges, allow_ssh=False
    )
    assert not any(r.dport == 22 or r.sport == 22 for r in compiled.rules)


def test_default_policies_drop():
    compiled = PolicyCompiler().compile((), (), ())
    assert ("iptables -P OUTPUT DROP") in compiled.render()
    assert all(target == "DROP" for _, _, target in compiled.default_policies)


def test_ipset_script_uses_host_addresses(sample_policy, sample_endpoints, sample_ranges):
    compiled = _compile(sample_policy, sample_endpoints, sample_ranges)
    script = compiled.allow_sets[Family.V4].restore_script()
    assert script.startswith("create allowed-domains hash:net family inet -exist\n")
    assert "add allowed-domains 160.79.104.10 -exist\n" in script
    assert "add allowed-domains 140.82.112.0/20 -exist\n" in script
