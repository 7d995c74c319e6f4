"""Tests for the audit sink."""

from __future__ import annotations

from pathlib import Path

from devfence.audit import AuditRecord, AuditSink, TokenBucket, parse_log_line
from devfence.policy.models import Family, LogLimit

_OUT = (
    "[ 1234.567890] FIREWALL_BLOCK_OUT: IN= OUT=eth0 SRC=172.17.0.2 DST=93.184.216.34 "
    "LEN=60 TOS=0x00 PREC=0x00 TTL=64 ID=4242 DF PROTO=TCP SPT=40000 DPT=443 WINDOW=64240"
)
_IN_V6 = (
    "kernel: FIREWALL_BLOCK_IN_V6: IN=eth0 OUT= SRC=2001:db8::5 DST=2001:db8::2 "
    "LEN=80 PROTO=UDP SPT=5353 DPT=5353 LEN=40"
)


def _record(i: int = 0) -> AuditRecord:
    return AuditRecord(timestamp=float(i), direction="out", family="v4", dest_ip="198.51.100.1", port=443)


class TestParse:
    def test_outbound_v4(self):
        record = parse_log_line(_OUT, timestamp=1.0)
        assert record == AuditRecord(
            timestamp=1.0,
            direction="out",
            family="v4",
            source_ip="172.17.0.2",
            dest_ip="93.184.216.34",
            port=443,
            protocol="tcp",
        )
        assert record.prefix == "FIREWALL_BLOCK_OUT:"

    def test_inbound_v6(self):
        record = parse_log_line(_IN_V6)
        assert record.direction == "in"
        assert record.family == "v6"
        assert record.dest_ip == "2001:db8::2"

    def test_unrelated_line(self):
        assert parse_log_line("kernel: eth0: link up") is None


class TestRateLimit:
    def test_flood_of_1000_records(self):
        sink = AuditSink(limit=LogLimit(burst=5, per_minute=10), clock=lambda: 100.0)
        written = sum(sink.submit(_record(i)) for i in range(1000))
        sink.flush()

        records = list(sink.query())
        blocked = [r for r in records if r.decision == "blocked"]
        markers = [r for r in records if r.decision == "suppressed"]
        assert written == 5
        assert len(blocked) == 5
        assert len(markers) == 1
        assert markers[0].suppressed == 995

    def test_marker_emitted_before_next_allowed_record(self):
        now = [0.0]
        sink = AuditSink(limit=LogLimit(burst=1, per_minute=60), clock=lambda: now[0])
        sink.submit(_record(1))
        sink.submit(_record(2))
        sink.submit(_record(3))
        now[0] += 1.0
        sink.submit(_record(4))
        decisions = [(r.decision, r.suppressed) for r in sink.query()]
        assert decisions == [("blocked", 0), ("suppressed", 2), ("blocked", 0)]

    def test_bucket_refills_at_steady_rate(self):
        now = [0.0]
        bucket = TokenBucket(LogLimit(burst=2, per_minute=10), clock=lambda: now[0])
        assert bucket.take() and bucket.take()
        assert not bucket.take()
        now[0] += 6.5
        assert bucket.take()
        assert not bucket.take()


class TestStore:
    def test_append_only_file_and_query(self, tmp_path: Path):
        path = tmp_path / "audit.jsonl"
        sink = AuditSink(path)
        sink.ingest([_OUT, "noise", _IN_V6])
        sink.flush()

        again = AuditSink(path)
        assert len(list(again.query())) == 2
        assert [r.dest_ip for r in again.query(direction="out")] == ["93.184.216.34"]
        assert [r.family for r in again.query(family="v6")] == ["v6"]
        assert list(again.query(since=10**12)) == []

    def test_reconcile_adds_markers_for_kernel_suppressed(self):
        sink = AuditSink()
        sink.submit(parse_log_line(_OUT))
        missing = sink.reconcile({(Family.V4, "OUTPUT"): 4, (Family.V4, "INPUT"): 0})
        assert missing == 3
        marker = [r for r in sink.query() if r.decision == "suppressed"][0]
        assert (marker.direction, marker.family, marker.suppressed) == ("out", "v4", 3)
        # Already accounted for on the next run
        assert sink.reconcile({(Family.V4, "OUTPUT"): 4}) == 0

    def test_reconcile_counts_sink_suppression(self):
        sink = AuditSink(limit=LogLimit(burst=5, per_minute=10), clock=lambda: 100.0)
        sink.ingest([_OUT] * 10)
        sink.flush()

        assert sink.reconcile({(Family.V4, "OUTPUT"): 10}) == 0
        markers = [r for r in sink.query() if r.decision == "suppressed"]
        assert [(m.family, m.direction, m.suppressed) for m in markers] == [("v4", "out", 5)]

    def test_markers_split_by_family_and_direction(self):
        sink = AuditSink(limit=LogLimit(burst=1, per_minute=10), clock=lambda: 100.0)
        sink.ingest([_OUT, _OUT, _IN_V6, _IN_V6, _IN_V6])
        sink.flush()
        markers = {
            (r.family, r.direction): r.suppressed
            for r in sink.query()
            if r.decision == "suppressed"
        }
        assert markers == {("v4", "out"): 1, ("v6", "in"): 3}

    def test_reconcile_ignores_records_before_last_apply(self):
        sink = AuditSink(limit=LogLimit(burst=10, per_minute=10))
        for i in range(5):
            sink.submit(parse_log_line(_OUT, timestamp=10.0 + i))
        # Counters were zeroed by an apply at t=50
        sink.submit(parse_log_line(_OUT, timestamp=60.0))
        assert sink.reconcile({(Family.V4, "OUTPUT"): 3}, since=50.0) == 2
