"""Fleet configuration: YAML schema and loader."""

from attofleet.config.loader import load_fleet_yaml
from attofleet.config.schema import AutomationConfig, FleetConfig, LoggingConfig, RepoConfig

__all__ = [
    "AutomationConfig",
    "FleetConfig",
    "LoggingConfig",
    "RepoConfig",
    "load_fleet_yaml",
]
