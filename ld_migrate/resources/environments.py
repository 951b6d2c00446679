"""Environment migrator for environments missing from an existing project."""

from typing import Any

from ld_migrate.fields import (
    ENVIRONMENT_CREATE_FIELDS,
    ENVIRONMENT_REQUIRED_FIELDS,
    select_fields,
)
from ld_migrate.resources.base import MigrationResult, ResourceMigrator


def build_environment_payload(
    env: dict[str, Any], dest_key: str | None = None
) -> dict[str, Any]:
    """Creation body for an environment, optionally under a new key."""
    payload = select_fields(env, ENVIRONMENT_CREATE_FIELDS, ENVIRONMENT_REQUIRED_FIELDS)
    if dest_key:
        payload["key"] = dest_key
    return payload


class EnvironmentMigrator(ResourceMigrator):
    """Migrator for project environments.

    Environment keys are referenced by the environment mapping and by every
    flag patch path, so a conflict never renames them.
    """

    resource_type = "environment"
    route = "environments"
    allow_prefix = False

    def resource_path(self, key: str, scope: str | None = None) -> str:
        return f"projects/{self.project_key}/environments/{key}"

    def collection_path(self, scope: str | None = None) -> str:
        return f"projects/{self.project_key}/environments"

    async def migrate(
        self, env: dict[str, Any], dest_key: str | None = None
    ) -> MigrationResult:
        return await self.ensure(build_environment_payload(env, dest_key))
