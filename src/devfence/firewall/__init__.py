"""Live packet-filter state: command execution and transactional apply."""
