"""Flag migrator: creation, view links and per-environment configuration."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from ld_migrate.client import LaunchDarklyClient
from ld_migrate.config import MigrationConfig
from ld_migrate.conflicts import ConflictResolver
from ld_migrate.fields import (
    FLAG_CREATE_FIELDS,
    FLAG_OPTIONAL_FIELDS,
    VARIATION_EXCLUDED_FIELDS,
    select_fields,
    strip_fields,
)
from ld_migrate.patches import PatchOperation, build_flag_environment_patches, build_patch
from ld_migrate.resources.base import (
    MigrationResult,
    PatchState,
    ResourceMigrator,
    ResourceState,
    response_error,
)
from ld_migrate.semantic_patch import translate

# Approval request statuses that block creating another request
ACTIVE_APPROVAL_STATUSES = frozenset({"pending", "scheduled", "failed"})


@dataclass(slots=True)
class EnvironmentPatchResult:
    """What happened to one flag in one destination environment."""

    flag_key: str
    env: str
    state: PatchState
    skipped_fields: list[str] = field(default_factory=list)
    approval_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class FlagMigrationResult:
    """Flag-level result plus one entry per migrated environment."""

    resource: MigrationResult
    environments: list[EnvironmentPatchResult] = field(default_factory=list)
    view_link: PatchState | None = None

    @property
    def dest_key(self) -> str | None:
        return self.resource.dest_id


class FlagMigrator(ResourceMigrator):
    """Migrator for feature flags.

    Per flag: look up or create it, read it back for the server-assigned
    variation ids, link it to views, then copy each environment's
    configuration. Environments that require approval get an approval
    request built from semantic instructions instead.
    """

    resource_type = "flag"
    route = "flags"

    def __init__(
        self,
        client: LaunchDarklyClient,
        resolver: ConflictResolver,
        project_key: str,
        source_project_key: str,
        migration_config: MigrationConfig | None = None,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        maintainer_mapping: dict[str, str] | None = None,
        assign_maintainer_ids: bool = False,
        target_view: str | None = None,
        current_member_id: str | None = None,
    ) -> None:
        """Initialize the flag migrator.

        Args:
            client: Client for the destination instance.
            resolver: Conflict resolver shared by the whole run.
            project_key: Destination project key.
            source_project_key: Source project key, quoted in approval requests.
            migration_config: Retry settings.
            dry_run: Look up flags but never write.
            sleep: Sleep used between 404 retries.
            maintainer_mapping: Source member id -> destination member id.
            assign_maintainer_ids: Set mapped maintainers on created flags.
            target_view: View every flag is additionally linked to.
            current_member_id: Member behind the API token, notified as a fallback.
        """
        super().__init__(client, resolver, project_key, migration_config, dry_run, sleep)
        self.source_project_key = source_project_key
        self.maintainer_mapping = maintainer_mapping or {}
        self.assign_maintainer_ids = assign_maintainer_ids
        self.target_view = target_view
        self.current_member_id = current_member_id

    def resource_path(self, key: str, scope: str | None = None) -> str:
        return f"flags/{self.project_key}/{key}"

    def collection_path(self, scope: str | None = None) -> str:
        return f"flags/{self.project_key}"

    def approval_path(self, flag_key: str, env: str) -> str:
        return (
            f"projects/{self.project_key}/flags/{flag_key}"
            f"/environments/{env}/approval-requests"
        )

    def mapped_maintainer(self, flag: dict[str, Any]) -> str | None:
        """Destination maintainer for a source flag, if mapping is enabled."""
        if not self.assign_maintainer_ids:
            return None
        return self.maintainer_mapping.get(flag.get("maintainerId") or "")

    def build_payload(self, flag: dict[str, Any]) -> dict[str, Any]:
        """Build the POST /flags body for a source flag.

        ``maintainerId`` is always sent, as null when unmapped, so the API
        does not default it to the token owner. View keys are linked with a
        separate patch after creation.
        """
        payload: dict[str, Any] = {
            "key": flag["key"],
            "name": flag.get("name") or flag["key"],
            "variations": [
                strip_fields(variation, VARIATION_EXCLUDED_FIELDS)
                for variation in flag.get("variations") or []
            ],
        }
        for name in FLAG_CREATE_FIELDS:
            if name in flag:
                payload[name] = flag[name]
        payload["maintainerId"] = self.mapped_maintainer(flag)

        if flag.get("clientSideAvailability"):
            payload["clientSideAvailability"] = flag["clientSideAvailability"]
        elif flag.get("includeInSnippet"):
            payload["includeInSnippet"] = flag["includeInSnippet"]

        payload.update(select_fields(flag, FLAG_OPTIONAL_FIELDS))
        return payload

    def identity(self, document: dict[str, Any]) -> tuple[Any, ...]:
        values = [v.get("value") for v in document.get("variations") or []]
        return (document.get("name"), values)

    def view_keys(self, flag: dict[str, Any]) -> list[str]:
        keys = list(flag.get("viewKeys") or [])
        if self.target_view and self.target_view not in keys:
            keys.append(self.target_view)
        return keys

    async def migrate_flag(
        self,
        flag: dict[str, Any],
        environments: list[tuple[str, str]],
    ) -> FlagMigrationResult:
        """Migrate one flag.

        Args:
            flag: Source flag document.
            environments: (source env key, destination env key) pairs in
                source-declared order.

        Returns:
            The flag result with one entry per environment the flag has
            configuration for.
        """
        key = (flag.get("key") or "").strip()
        if not key:
            return FlagMigrationResult(
                MigrationResult(
                    success=False,
                    source_id="",
                    error="Flag data has an empty key",
                    state=ResourceState.FAILED,
                )
            )
        if not flag.get("variations"):
            self._logger.warning("Flag has no variations, skipping", flag=key)
            return FlagMigrationResult(
                MigrationResult(
                    success=True,
                    source_id=key,
                    skipped=True,
                    metadata={"skip_reason": "no_variations"},
                )
            )

        resource = await self.ensure(self.build_payload(flag))
        result = FlagMigrationResult(resource)
        if not resource.success:
            return result

        dest_key = resource.dest_id
        flag_logger = self._logger.bind(flag=dest_key)

        # Post-creation read: variation ids and current environment config
        current = None
        if resource.state != ResourceState.NOT_EXISTS:
            current = await self.fetch(dest_key)
        variations = (current or {}).get("variations") or []

        view_keys = self.view_keys(flag)
        if view_keys:
            outcome = await self.apply_patch(
                self.resource_path(dest_key),
                [build_patch("viewKeys", "add", view_keys)],
                current,
            )
            result.view_link = outcome.state
            if outcome.state == PatchState.FAILED:
                flag_logger.warning(
                    "Failed to add flag to views",
                    views=view_keys,
                    status=outcome.status_code,
                )

        maintainer_id = self.mapped_maintainer(flag)
        source_envs = flag.get("environments") or {}
        for source_env, dest_env in environments:
            env_config = source_envs.get(source_env)
            if not env_config:
                continue
            env_result = await self.migrate_environment(
                dest_key, dest_env, env_config, current, variations, maintainer_id
            )
            result.environments.append(env_result)

        return result

    async def migrate_environment(
        self,
        dest_key: str,
        dest_env: str,
        env_config: dict[str, Any],
        current: dict[str, Any] | None,
        variations: list[dict[str, Any]],
        maintainer_id: str | None,
    ) -> EnvironmentPatchResult:
        """Copy one environment's configuration, falling back to approval."""
        operations = build_flag_environment_patches(env_config, dest_env)
        outcome = await self.apply_patch(
            self.resource_path(dest_key), operations, current
        )

        if outcome.status_code == 405:
            self._logger.info(
                "Environment requires approval", flag=dest_key, env=dest_env
            )
            return await self.request_approval(
                dest_key, dest_env, outcome.operations, variations, maintainer_id
            )

        if outcome.state == PatchState.FAILED:
            self._logger.error(
                "Failed to patch flag environment",
                flag=dest_key,
                env=dest_env,
                status=outcome.status_code,
            )
        return EnvironmentPatchResult(
            flag_key=dest_key, env=dest_env, state=outcome.state, error=outcome.error
        )

    async def find_active_approval(self, dest_key: str, env: str) -> dict[str, Any] | None:
        """Return an active approval request for the flag environment, if any."""
        try:
            data = await self.client.get_json(
                "approval-requests", self.approval_path(dest_key, env)
            )
        except httpx.HTTPError as e:
            self._logger.warning(
                "Could not list approval requests", flag=dest_key, env=env, error=str(e)
            )
            return None
        for request in (data or {}).get("items") or []:
            if request.get("status") in ACTIVE_APPROVAL_STATUSES:
                return request
        return None

    async def request_approval(
        self,
        dest_key: str,
        env: str,
        operations: list[PatchOperation],
        variations: list[dict[str, Any]],
        maintainer_id: str | None,
    ) -> EnvironmentPatchResult:
        """Submit the rejected patch as an approval request, at most once.

        Args:
            dest_key: Destination flag key.
            env: Destination environment key.
            operations: The patch operations the environment rejected.
            variations: Destination variations, for index-to-id mapping.
            maintainer_id: Mapped maintainer to notify.

        Returns:
            APPROVAL_EXISTS, APPROVAL_REQUESTED, MANUAL or FAILED.
        """
        existing = await self.find_active_approval(dest_key, env)
        if existing is not None:
            self._logger.warning(
                "Existing approval request found, not creating another",
                flag=dest_key,
                env=env,
                approval_id=existing.get("_id"),
                status=existing.get("status"),
            )
            return EnvironmentPatchResult(
                flag_key=dest_key,
                env=env,
                state=PatchState.APPROVAL_EXISTS,
                approval_id=existing.get("_id"),
            )

        translation = translate(operations, variations)
        if translation.skipped_fields:
            self._logger.info(
                "Fields to set manually after approval",
                flag=dest_key,
                env=env,
                fields=translation.skipped_fields,
            )
        if not translation.instructions:
            self._logger.warning(
                "No instructions to approve, skipping", flag=dest_key, env=env
            )
            return EnvironmentPatchResult(
                flag_key=dest_key,
                env=env,
                state=PatchState.MANUAL,
                skipped_fields=translation.skipped_fields,
            )

        body: dict[str, Any] = {
            "description": (
                f'Migration of flag "{dest_key}" environment "{env}" '
                f'from project "{self.source_project_key}"'
            ),
            "instructions": translation.instructions,
        }
        notify_id = maintainer_id or self.current_member_id
        if notify_id:
            body["notifyMemberIds"] = [notify_id]
        else:
            self._logger.warning(
                "No one to notify about approval request", flag=dest_key, env=env
            )

        try:
            response = await self.client.post(
                "approval-requests", self.approval_path(dest_key, env), body
            )
        except httpx.HTTPError as e:
            return EnvironmentPatchResult(
                flag_key=dest_key,
                env=env,
                state=PatchState.FAILED,
                skipped_fields=translation.skipped_fields,
                error=f"Failed to create approval request: {e}",
            )

        if not 200 <= response.status_code < 300:
            self._logger.error(
                "Failed to create approval request",
                flag=dest_key,
                env=env,
                status=response.status_code,
            )
            return EnvironmentPatchResult(
                flag_key=dest_key,
                env=env,
                state=PatchState.FAILED,
                skipped_fields=translation.skipped_fields,
                error=response_error(response, "Failed to create approval request"),
            )

        approval_id = None
        try:
            approval_id = (response.json() or {}).get("_id")
        except ValueError:
            self._logger.debug("Approval response had no JSON body", flag=dest_key, env=env)
        self._logger.info(
            "Approval request created",
            flag=dest_key,
            env=env,
            instructions=len(translation.instructions),
        )
        return EnvironmentPatchResult(
            flag_key=dest_key,
            env=env,
            state=PatchState.APPROVAL_REQUESTED,
            skipped_fields=translation.skipped_fields,
            approval_id=approval_id,
        )
