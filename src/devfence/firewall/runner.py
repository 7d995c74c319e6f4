"""Thin wrapper around the packet-filter command-line tools."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_TIMEOUT = 10


class CommandError(Exception):
    """An external command failed, timed out, or is not installed."""

    def __init__(self, argv: list[str], reason: str) -> None:
        self.argv = argv
        self.reason = reason
        super().__init__(f"{' '.join(argv)}: {reason}")


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""


class CommandRunner:
    """Runs iptables/ip6tables/ipset/ip via ``subprocess``."""

    def __init__(self, timeout: float = _TIMEOUT) -> None:
        self._timeout = timeout

    def run(self, argv: list[str], input: str | None = None, check: bool = True) -> CommandResult:
        """Run ``argv``. Raises ``CommandError`` on failure when ``check`` is set."""
        logger.debug("exec: %s", " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as exc:
            raise CommandError(argv, f"{exc.__class__.__name__}: {exc}") from exc

        result = CommandResult(
            argv=tuple(argv),
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
        if check and proc.returncode != 0:
            raise CommandError(argv, proc.stderr.strip() or f"exit status {proc.returncode}")
        return result
