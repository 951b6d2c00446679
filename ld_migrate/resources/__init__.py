"""Resource migration modules."""

from .base import MigrationResult, PatchState, ResourceMigrator, ResourceState
from .environments import EnvironmentMigrator
from .flags import EnvironmentPatchResult, FlagMigrationResult, FlagMigrator
from .projects import ProjectMigrator
from .segments import SegmentMigrator
from .views import ViewMigrator

__all__ = [
    "EnvironmentMigrator",
    "EnvironmentPatchResult",
    "FlagMigrationResult",
    "FlagMigrator",
    "MigrationResult",
    "PatchState",
    "ProjectMigrator",
    "ResourceMigrator",
    "ResourceState",
    "SegmentMigrator",
    "ViewMigrator",
]
