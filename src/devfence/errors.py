"""Error taxonomy shared by every pipeline stage.

Recoverable failures (``ResolutionFailure``, ``MalformedEntry``) are
collected into stage reports and logged as warnings. Fatal failures
(``ProviderUnavailable``, ``ApplyFailure``, ``PolicyError``) are raised
and terminate the run. ``VerificationFailure`` carries its own severity.
"""

from __future__ import annotations


class DevfenceError(Exception):
    """Base class for all devfence errors."""


class PolicyError(DevfenceError):
    """The declarative policy could not be loaded or is invalid."""


class ResolutionFailure(DevfenceError):
    """A domain produced no usable A or AAAA answers."""

    def __init__(self, domain: str, reason: str = "") -> None:
        self.domain = domain
        self.reason = reason
        super().__init__(f"failed to resolve {domain}: {reason or 'no answers'}")


class MalformedEntry(DevfenceError):
    """An address or CIDR from some source failed syntax validation."""

    def __init__(self, source: str, value: str) -> None:
        self.source = source
        self.value = value
        super().__init__(f"malformed entry from {source}: {value!r}")


class ProviderUnavailable(DevfenceError):
    """A bulk range provider was unreachable or returned an unusable document."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"range provider {provider} unavailable: {reason}")


class ApplyFailure(DevfenceError):
    """Rule application failed part-way; the firewall was locked down."""

    def __init__(self, stage: str, reason: str) -> None:
        self.stage = stage
        self.reason = reason
        super().__init__(f"apply failed during {stage}: {reason}")


class VerificationFailure(DevfenceError):
    """A post-apply probe did not observe the expected reachability."""

    def __init__(self, probe: str, url: str, fatal: bool) -> None:
        self.probe = probe
        self.url = url
        self.fatal = fatal
        expectation = "reachable" if fatal else "unreachable"
        super().__init__(f"{probe} probe: {url} was unexpectedly {expectation}")
