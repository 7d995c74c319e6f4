"""Global configuration — XDG paths, env vars, defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "devfence"
    return Path.home() / ".local" / "share" / "devfence"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "devfence"
    return Path.home() / ".config" / "devfence"


@dataclass
class DevfenceConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    policy_dirs: list[Path] = field(default_factory=list)
    dns_timeout: float = 3.0
    dns_workers: int = 8
    retries: int = 2
    backoff: float = 0.5
    http_timeout: float = 10.0
    blocked_probe_timeout: float = 3.0
    allowed_probe_timeout: float = 5.0
    log_burst: int = 5
    log_per_minute: int = 10
    verbose: bool = False

    @property
    def audit_path(self) -> Path:
        return self.data_dir / "audit.jsonl"

    @property
    def lock_path(self) -> Path:
        return self.data_dir / "apply.lock"

    @classmethod
    def load(cls) -> DevfenceConfig:
        """Load config from environment variables with XDG defaults."""
        config = cls()

        env_data = os.environ.get("DEVFENCE_DATA_DIR")
        if env_data:
            config.data_dir = Path(env_data)

        env_timeout = os.environ.get("DEVFENCE_DNS_TIMEOUT")
        if env_timeout:
            config.dns_timeout = float(env_timeout)

        env_workers = os.environ.get("DEVFENCE_DNS_WORKERS")
        if env_workers:
            config.dns_workers = max(1, int(env_workers))

        env_retries = os.environ.get("DEVFENCE_RETRIES")
        if env_retries:
            config.retries = max(0, int(env_retries))

        env_http = os.environ.get("DEVFENCE_HTTP_TIMEOUT")
        if env_http:
            config.http_timeout = float(env_http)

        # Add config dir's policies/ subdirectory if it exists
        policies_dir = config.config_dir / "policies"
        if policies_dir.is_dir():
            config.policy_dirs.append(policies_dir)

        return config
