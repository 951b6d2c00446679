"""Project migrator for the destination project itself."""

from typing import Any

import httpx

from ld_migrate.resources.base import MigrationResult, ResourceMigrator
from ld_migrate.resources.environments import build_environment_payload


def build_project_payload(
    source_project: dict[str, Any],
    dest_key: str,
    environments: list[dict[str, Any]],
) -> dict[str, Any]:
    """Build the creation body for the destination project.

    Args:
        source_project: Extracted source project document.
        dest_key: Destination project key, also used as its name.
        environments: Source environment documents to create with it.

    Returns:
        POST /projects body.
    """
    payload: dict[str, Any] = {
        "key": dest_key,
        "name": dest_key,
        "tags": source_project.get("tags") or [],
        "environments": [build_environment_payload(env) for env in environments],
    }
    if source_project.get("defaultClientSideAvailability"):
        payload["defaultClientSideAvailability"] = source_project[
            "defaultClientSideAvailability"
        ]
    elif "includeInSnippetByDefault" in source_project:
        payload["includeInSnippetByDefault"] = source_project["includeInSnippetByDefault"]
    return payload


class ProjectMigrator(ResourceMigrator):
    """Migrator for the destination project.

    A 409 on project creation never reaches the conflict resolver: the rate
    governor raises ProjectConflictError, which stops the run.
    """

    resource_type = "project"
    route = "projects"
    allow_prefix = False

    def resource_path(self, key: str, scope: str | None = None) -> str:
        return f"projects/{key}"

    def collection_path(self, scope: str | None = None) -> str:
        return "projects"

    async def migrate(
        self, source_project: dict[str, Any], environments: list[dict[str, Any]]
    ) -> MigrationResult:
        """Create the destination project unless it already exists."""
        payload = build_project_payload(source_project, self.project_key, environments)
        return await self.ensure(payload)

    async def existing_environment_keys(self) -> list[str]:
        """Environment keys of the destination project, in API order."""
        try:
            data = await self.client.get_json(
                "environments", f"projects/{self.project_key}/environments"
            )
        except httpx.HTTPError as e:
            self._logger.warning("Could not list destination environments", error=str(e))
            return []
        if not data:
            return []
        return [env["key"] for env in data.get("items") or [] if env.get("key")]
