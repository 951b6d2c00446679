"""Segment migrator for per-environment LaunchDarkly segments."""

from typing import Any

from ld_migrate.fields import SEGMENT_CREATE_FIELDS, SEGMENT_PATCH_FIELDS, select_fields
from ld_migrate.patches import PatchOperation, build_patch, build_rules
from ld_migrate.resources.base import (
    MigrationResult,
    PatchState,
    ResourceMigrator,
    ResourceState,
)


def build_segment_payload(segment: dict[str, Any]) -> dict[str, Any]:
    return select_fields(segment, SEGMENT_CREATE_FIELDS, frozenset({"name", "key"}))


def build_segment_patches(segment: dict[str, Any]) -> list[PatchOperation]:
    """Targeting copied onto a segment after it exists."""
    patches = [
        build_patch(name, "add", segment[name])
        for name in SEGMENT_PATCH_FIELDS
        if segment.get(name)
    ]
    patches.extend(build_rules(segment.get("rules") or []))
    return patches


class SegmentMigrator(ResourceMigrator):
    """Migrator for segments.

    Segments live in one environment, so conflicts are tracked per
    destination environment. Unbounded (big) segments are not migrated.
    """

    resource_type = "segment"
    route = "segments"

    def resource_path(self, key: str, scope: str | None = None) -> str:
        return f"segments/{self.project_key}/{scope}/{key}"

    def collection_path(self, scope: str | None = None) -> str:
        return f"segments/{self.project_key}/{scope}"

    async def migrate_segment(
        self, segment: dict[str, Any], dest_env: str
    ) -> MigrationResult:
        """Create or update one segment in a destination environment.

        Args:
            segment: Source segment document.
            dest_env: Destination environment key.

        Returns:
            Result with the patch state in ``metadata["patch"]``.
        """
        key = segment.get("key", "")
        if segment.get("unbounded"):
            self._logger.warning(
                "Segment is unbounded, skipping", segment=key, env=dest_env
            )
            return MigrationResult(
                success=True,
                source_id=key,
                skipped=True,
                metadata={"skip_reason": "unbounded", "env": dest_env},
            )

        result = await self.ensure(build_segment_payload(segment), scope=dest_env)
        result.metadata["env"] = dest_env
        if not result.success:
            return result

        patches = build_segment_patches(segment)
        if not patches:
            return result

        current = None
        if result.state != ResourceState.NOT_EXISTS:
            current = await self.fetch(result.dest_id, dest_env)

        outcome = await self.apply_patch(
            self.resource_path(result.dest_id, dest_env), patches, current
        )
        result.metadata["patch"] = outcome.state.value
        if outcome.state == PatchState.FAILED:
            self._logger.error(
                "Failed to patch segment",
                segment=result.dest_id,
                env=dest_env,
                status=outcome.status_code,
            )
            result.success = False
            result.error = outcome.error
        return result

    async def migrate_environment(
        self, segments: list[dict[str, Any]], dest_env: str
    ) -> list[MigrationResult]:
        """Migrate every segment of one environment, in source order."""
        self._logger.info(
            "Migrating segments", env=dest_env, count=len(segments)
        )
        return [await self.migrate_segment(segment, dest_env) for segment in segments]
