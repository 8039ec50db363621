"""attofleet: supervise a fleet of autonomous coding-agent sessions."""

__version__ = "0.1.0"
