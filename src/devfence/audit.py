"""Audit trail of blocked traffic.

Kernel LOG lines carrying one of the ``FIREWALL_BLOCK_*`` prefixes are parsed
into ``AuditRecord``s and appended to a JSON-lines file. The sink applies
the same burst + steady-state limit that the compiled LOG rules use, before
anything is written. Records dropped by the limiter are counted, and one
``suppressed`` marker per family and direction reports how many were dropped.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import asdict, dataclass
from pathlib import Path

from devfence.policy.compiler import LOG_PREFIXES
from devfence.policy.models import Family, LogLimit

logger = logging.getLogger(__name__)

_PREFIX_RE = re.compile(r"(FIREWALL_BLOCK_(?:IN|OUT)(?:_V6)?):")
_FIELD_RE = re.compile(r"\b([A-Z]+)=(\S*)")
_PREFIX_INFO = {
    prefix.rstrip(": "): (family, "out" if chain == "OUTPUT" else "in")
    for (family, chain), prefix in LOG_PREFIXES.items()
}


@dataclass(frozen=True)
class AuditRecord:
    """One blocked packet, or a marker for records dropped by the limiter."""

    timestamp: float
    direction: str
    family: str
    source_ip: str = ""
    dest_ip: str = ""
    port: int = 0
    protocol: str = ""
    decision: str = "blocked"
    suppressed: int = 0

    @property
    def prefix(self) -> str:
        chain = "OUTPUT" if self.direction == "out" else "INPUT"
        return LOG_PREFIXES[(Family(self.family), chain)].strip()

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, line: str) -> AuditRecord:
        return cls(**json.loads(line))


def parse_log_line(line: str, timestamp: float | None = None) -> AuditRecord | None:
    """Parse a kernel LOG line. Returns None for lines without a devfence prefix."""
    match = _PREFIX_RE.search(line)
    if match is None:
        return None
    family, direction = _PREFIX_INFO[match.group(1)]
    fields = dict(_FIELD_RE.findall(line[match.end() :]))
    port = fields.get("DPT", "")
    return AuditRecord(
        timestamp=time.time() if timestamp is None else timestamp,
        direction=direction,
        family=family.value,
        source_ip=fields.get("SRC", ""),
        dest_ip=fields.get("DST", ""),
        port=int(port) if port.isdigit() else 0,
        protocol=fields.get("PROTO", "").lower(),
    )


class TokenBucket:
    """Burst + steady-rate limiter mirroring the semantics of ``-m limit``."""

    def __init__(self, limit: LogLimit, clock: Callable[[], float] = time.monotonic) -> None:
        self._capacity = float(limit.burst)
        self._rate = limit.per_minute / 60.0
        self._tokens = float(limit.burst)
        self._clock = clock
        self._last = clock()

    def take(self) -> bool:
        now = self._clock()
        self._tokens = min(self._capacity, self._tokens + (now - self._last) * self._rate)
        self._last = now
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False


class AuditSink:
    """Append-only, rate-limited store of ``AuditRecord``s. Safe for concurrent writers."""

    def __init__(
        self,
        path: Path | None = None,
        limit: LogLimit | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = path
        self._bucket = TokenBucket(limit or LogLimit(), clock)
        self._lock = threading.Lock()
        self._pending: dict[tuple[str, str], int] = {}
        self._memory: list[AuditRecord] = []

    @property
    def suppressed(self) -> int:
        return sum(self._pending.values())

    def submit(self, record: AuditRecord) -> bool:
        """Write ``record`` if the limiter allows it. Returns whether it was written."""
        with self._lock:
            if not self._bucket.take():
                key = (record.family, record.direction)
                self._pending[key] = self._pending.get(key, 0) + 1
                return False
            self._write_markers()
            self._write(record)
            return True

    def ingest(self, lines: Iterable[str]) -> int:
        """Parse and submit kernel log lines; returns how many were written."""
        written = 0
        for line in lines:
            record = parse_log_line(line)
            if record is not None and self.submit(record):
                written += 1
        return written

    def flush(self) -> None:
        """Emit pending suppression markers, one per family and direction."""
        with self._lock:
            self._write_markers()

    def reconcile(
        self, counters: dict[tuple[Family, str], int], since: float | None = None
    ) -> int:
        """Record kernel-side denials that never produced a LOG line.

        ``counters`` are REJECT packet counts per (family, chain). The kernel
        resets them on every apply, so pass that apply time as ``since`` to
        compare only records from the same counting period. Anything beyond
        what the store holds was rate-limited by the kernel.
        """
        self.flush()
        stored = list(self.query(since=since))
        missing = 0
        ordered = sorted(counters.items(), key=lambda kv: (kv[0][0].value, kv[0][1]))
        for (family, chain), packets in ordered:
            direction = "out" if chain == "OUTPUT" else "in"
            seen = sum(
                r.suppressed if r.decision == "suppressed" else 1
                for r in stored
                if r.family == family.value and r.direction == direction
            )
            gap = packets - seen
            if gap > 0:
                missing += gap
                with self._lock:
                    self._write(_marker(gap, direction, family.value))
        return missing

    def query(
        self,
        direction: str | None = None,
        family: str | None = None,
        since: float | None = None,
    ) -> Iterator[AuditRecord]:
        """Iterate stored records, optionally filtered."""
        for record in self._read():
            if direction and record.direction != direction:
                continue
            if family and record.family != family:
                continue
            if since is not None and record.timestamp < since:
                continue
            yield record

    def _write_markers(self) -> None:
        for (family, direction), count in sorted(self._pending.items()):
            self._write(_marker(count, direction, family))
        self._pending.clear()

    def _write(self, record: AuditRecord) -> None:
        if record.decision == "suppressed":
            logger.warning("%s %d records suppressed", record.prefix, record.suppressed)
        else:
            logger.warning(
                "%s %s -> %s:%d %s",
                record.prefix,
                record.source_ip,
                record.dest_ip,
                record.port,
                record.protocol,
            )
        if self._path is None:
            self._memory.append(record)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as fh:
            fh.write(record.to_json() + "\n")

    def _read(self) -> Iterator[AuditRecord]:
        if self._path is None:
            with self._lock:
                records = list(self._memory)
            yield from records
            return
        if not self._path.exists():
            return
        with open(self._path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield AuditRecord.from_json(line)
                except (ValueError, TypeError):
                    logger.debug("Skipping unreadable audit line: %r", line)


def _marker(count: int, direction: str, family: str) -> AuditRecord:
    return AuditRecord(
        timestamp=time.time(),
        direction=direction,
        family=family,
        decision="suppressed",
        suppressed=count,
    )
