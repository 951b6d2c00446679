"""Migration orchestrator for coordinating LaunchDarkly project migrations."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from ld_migrate.client import LaunchDarklyClient, create_client
from ld_migrate.config import Config
from ld_migrate.conflicts import ConflictResolver
from ld_migrate.exceptions import ConfigurationError, ProjectConflictError
from ld_migrate.rate_limits import RateGovernor
from ld_migrate.report import MigrationReport
from ld_migrate.resources import (
    EnvironmentMigrator,
    FlagMigrationResult,
    FlagMigrator,
    MigrationResult,
    ProjectMigrator,
    ResourceState,
    SegmentMigrator,
    ViewMigrator,
)
from ld_migrate.source import SourceProject

logger = structlog.get_logger(__name__)


class MigrationOrchestrator:
    """Orchestrates the migration of one project in dependency order.

    Handles:
    - Environment selection and mapping
    - Project, environment, view, segment and flag migration, in that order
    - Bounded concurrency across flags
    - Aggregation of every outcome into a MigrationReport

    Only ProjectConflictError, ConfigurationError and SourceDataError escape;
    every other failure is recorded in the report and the run continues.
    """

    def __init__(
        self,
        config: Config,
        client: LaunchDarklyClient | None = None,
        governor: RateGovernor | None = None,
        resolver: ConflictResolver | None = None,
        source: SourceProject | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the migration orchestrator.

        Args:
            config: Migration configuration.
            client: Destination client; one is created from config if omitted.
            governor: Rate governor shared by all requests of the run.
            resolver: Conflict resolver; built from the conflict prefix if omitted.
            source: Extracted source project; read from the data dir if omitted.
            sleep: Sleep used between 404 patch retries.
        """
        self.config = config
        self.options = config.options
        self.governor = governor or (client.governor if client else RateGovernor())
        self.resolver = resolver or ConflictResolver(self.options.conflict_prefix)
        self._client = client
        self._source = source
        self._sleep = sleep
        self._logger = logger.bind(orchestrator=True)

    @property
    def source_key(self) -> str:
        return self.config.source.project_key or ""

    @property
    def dest_key(self) -> str:
        return self.config.destination.project_key or ""

    def dest_env_key(self, source_env_key: str) -> str:
        """Destination environment key for a source environment."""
        return self.options.environment_mapping.get(source_env_key, source_env_key)

    def select_environments(self, source: SourceProject) -> list[dict[str, Any]]:
        """Apply the environment allowlist and mapping to the source environments.

        Raises:
            ConfigurationError: If no source environment is left to migrate.
        """
        environments = source.environments
        available = [env.get("key") for env in environments]

        requested = self.options.environments
        if requested:
            not_found = [key for key in requested if key not in available]
            if not_found:
                self._logger.warning(
                    "Requested environments not found in source", environments=not_found
                )
            environments = [env for env in environments if env.get("key") in requested]
            if not environments:
                raise ConfigurationError(
                    "None of the requested environments exist in the source project. "
                    f"Available environments: {', '.join(available)}"
                )

        mapping = self.options.environment_mapping
        if mapping:
            environments = [env for env in environments if env.get("key") in mapping]
            if not environments:
                raise ConfigurationError(
                    "None of the mapped source environments exist in the source project. "
                    f"Mapped: {', '.join(mapping)}; available: {', '.join(available)}"
                )

        self._logger.info(
            "Selected environments",
            environments=[
                f"{env['key']}→{self.dest_env_key(env['key'])}" for env in environments
            ],
        )
        return environments

    async def migrate_all(self) -> MigrationReport:
        """Migrate the configured project.

        Returns:
            The run report.

        Raises:
            ConfigurationError: If project keys or the environment selection are invalid.
            SourceDataError: If the extracted source project cannot be read.
            ProjectConflictError: If creating the destination project returns 409.
        """
        if not self.source_key or not self.dest_key:
            raise ConfigurationError(
                "Both the source and the destination project key are required"
            )

        source = self._source or SourceProject(self.config.data_dir, self.source_key)
        source.load()
        environments = self.select_environments(source)

        report = MigrationReport(self.source_key, self.dest_key, self.options.dry_run)
        self._logger.info(
            "Starting migration",
            source=self.source_key,
            destination=self.dest_key,
            dry_run=self.options.dry_run,
        )

        if self._client is not None:
            await self._run(self._client, source, environments, report)
        else:
            async with create_client(
                self.config.destination,
                self.config.migration,
                self.governor,
                "destination",
            ) as client:
                await self._run(client, source, environments, report)

        report.record_conflicts(self.resolver)
        report.stats.rate_limit_waits = self.governor.rejections
        report.finish()
        self._logger.info(
            "Migration finished",
            status=report.status,
            flags=report.stats.flags_processed,
            approvals=len(report.pending_approvals),
            errors=len(report.errors),
        )
        return report

    def _migrator_kwargs(self, client: LaunchDarklyClient) -> dict[str, Any]:
        return {
            "client": client,
            "resolver": self.resolver,
            "project_key": self.dest_key,
            "migration_config": self.config.migration,
            "dry_run": self.options.dry_run,
            "sleep": self._sleep,
        }

    async def _run(
        self,
        client: LaunchDarklyClient,
        source: SourceProject,
        environments: list[dict[str, Any]],
        report: MigrationReport,
    ) -> None:
        kwargs = self._migrator_kwargs(client)

        project_result = await self._migrate_project(
            ProjectMigrator(**kwargs), source, environments, report
        )
        if not project_result.success:
            self._logger.error(
                "Destination project could not be created, stopping",
                error=project_result.error,
            )
            return

        env_pairs = await self._migrate_environments(
            client, project_result, environments, report
        )

        await self._migrate_views(ViewMigrator(**kwargs), source, report)

        if self.options.migrate_segments:
            await self._migrate_segments(
                SegmentMigrator(**kwargs), source, env_pairs, report
            )
        else:
            self._logger.info("Segment migration disabled, skipping")

        current_member_id = None
        if not self.options.dry_run:
            current_member_id = await client.current_member_id()
        maintainer_mapping = (
            source.load_maintainer_mapping() if self.options.assign_maintainer_ids else {}
        )
        flag_migrator = FlagMigrator(
            **kwargs,
            source_project_key=self.source_key,
            maintainer_mapping=maintainer_mapping,
            assign_maintainer_ids=self.options.assign_maintainer_ids,
            target_view=self.options.target_view,
            current_member_id=current_member_id,
        )
        for flag_result in await self._migrate_flags(flag_migrator, source, env_pairs):
            report.record_flag(flag_result)

    async def _migrate_project(
        self,
        migrator: ProjectMigrator,
        source: SourceProject,
        environments: list[dict[str, Any]],
        report: MigrationReport,
    ) -> MigrationResult:
        """Create the destination project with the selected environments."""
        project_envs = [
            {**env, "key": self.dest_env_key(env["key"])} for env in environments
        ]
        result = await migrator.migrate(source.project, project_envs)
        report.record_resource("project", result)
        return result

    async def _migrate_environments(
        self,
        client: LaunchDarklyClient,
        project_result: MigrationResult,
        environments: list[dict[str, Any]],
        report: MigrationReport,
    ) -> list[tuple[str, str]]:
        """Make sure every selected environment exists in the destination.

        Returns:
            (source env key, destination env key) pairs in source order.

        Raises:
            ConfigurationError: If mapped destination environments are missing
                from an existing destination project.
        """
        pairs = [(env["key"], self.dest_env_key(env["key"])) for env in environments]
        if project_result.state != ResourceState.EXISTS:
            # Created (or planned) together with the project
            return pairs

        kwargs = self._migrator_kwargs(client)
        existing = await ProjectMigrator(**kwargs).existing_environment_keys()
        self._logger.info("Found existing destination environments", environments=existing)

        if self.options.environment_mapping:
            missing = [(src, dest) for src, dest in pairs if dest not in existing]
            if missing:
                raise ConfigurationError(
                    "Mapped destination environments do not exist in the destination "
                    "project: "
                    + ", ".join(f"{src} → {dest}" for src, dest in missing)
                    + f". Available: {', '.join(existing)}"
                )
            return pairs

        env_migrator = EnvironmentMigrator(**kwargs)
        kept: list[tuple[str, str]] = []
        for env, (src, dest) in zip(environments, pairs, strict=True):
            if dest in existing:
                kept.append((src, dest))
                continue
            result = await env_migrator.migrate(env, dest)
            report.record_resource("environment", result)
            if result.success:
                kept.append((src, dest))
            else:
                self._logger.warning("Skipping environment", env=dest)
        return kept

    async def _migrate_views(
        self, migrator: ViewMigrator, source: SourceProject, report: MigrationReport
    ) -> None:
        view_keys = source.view_keys()
        target_view = self.options.target_view
        if target_view and target_view not in view_keys:
            view_keys.append(target_view)
        if not view_keys:
            self._logger.info("No views found in source flags")
            return

        self._logger.info("Ensuring views", views=view_keys)
        for view_key in view_keys:
            report.record_resource("view", await migrator.migrate(view_key, self.source_key))

    async def _migrate_segments(
        self,
        migrator: SegmentMigrator,
        source: SourceProject,
        env_pairs: list[tuple[str, str]],
        report: MigrationReport,
    ) -> None:
        for source_env, dest_env in env_pairs:
            segments = source.load_segments(source_env)
            for result in await migrator.migrate_environment(segments, dest_env):
                report.record_resource("segment", result)

    async def _migrate_flags(
        self,
        migrator: FlagMigrator,
        source: SourceProject,
        env_pairs: list[tuple[str, str]],
    ) -> list[FlagMigrationResult]:
        """Migrate every source flag, up to ``max_concurrent`` at a time.

        Results follow the source flag list order.
        """
        flag_keys = source.flag_keys
        semaphore = asyncio.Semaphore(self.config.migration.max_concurrent)
        self._logger.info(
            "Migrating flags",
            count=len(flag_keys),
            max_concurrent=self.config.migration.max_concurrent,
        )

        async def migrate_one(index: int, flag_key: str) -> FlagMigrationResult:
            async with semaphore:
                self._logger.info(
                    f"[{index + 1}/{len(flag_keys)}] Processing flag", flag=flag_key
                )
                try:
                    flag = source.load_flag(flag_key)
                    if flag is None:
                        return FlagMigrationResult(
                            MigrationResult(
                                success=True,
                                source_id=flag_key,
                                skipped=True,
                                metadata={"skip_reason": "missing_source_data"},
                            )
                        )
                    return await migrator.migrate_flag(flag, env_pairs)
                except ProjectConflictError:
                    raise
                except Exception as e:
                    error_msg = f"Failed to migrate flag: {e}"
                    self._logger.error(error_msg, flag=flag_key)
                    return FlagMigrationResult(
                        MigrationResult(
                            success=False,
                            source_id=flag_key,
                            error=error_msg,
                            state=ResourceState.FAILED,
                        )
                    )

        return list(
            await asyncio.gather(
                *(migrate_one(index, key) for index, key in enumerate(flag_keys))
            )
        )
