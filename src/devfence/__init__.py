"""devfence — auditable egress firewall for AI coding-agent dev containers."""

__version__ = "0.1.0"
