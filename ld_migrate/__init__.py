"""LaunchDarkly Project Migrator.

A Python CLI & library for migrating feature-flag projects between
LaunchDarkly instances, accounts and regions.
"""

__version__ = "0.1.0"

from ld_migrate.config import Config, MigrationConfig, MigrationOptions
from ld_migrate.orchestration import MigrationOrchestrator

__all__ = [
    "Config",
    "MigrationConfig",
    "MigrationOptions",
    "MigrationOrchestrator",
    "__version__",
]
