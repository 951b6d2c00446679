"""End-of-run migration report: aggregation, text rendering and files."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from ld_migrate.conflicts import ConflictResolver
from ld_migrate.resources.base import MigrationResult, PatchState, ResourceState
from ld_migrate.resources.flags import FlagMigrationResult

logger = structlog.get_logger(__name__)

RESOURCE_TYPES = ("project", "environment", "view", "segment", "flag")

REPORT_FILE = "migration_report.json"
SUMMARY_FILE = "migration_summary.txt"

PENDING_APPROVAL_STATES = frozenset(
    {PatchState.APPROVAL_REQUESTED, PatchState.APPROVAL_EXISTS}
)


@dataclass(slots=True)
class ResourceCounts:
    """Per-resource-type outcome counters."""

    total: int = 0
    created: int = 0
    existing: int = 0
    skipped: int = 0
    planned: int = 0
    failed: int = 0


@dataclass(slots=True)
class MigrationRunStats:
    """Counters for one orchestrator run. Never persisted between runs."""

    flags_processed: int = 0
    environments_applied: int = 0
    environments_noop: int = 0
    approvals_created: int = 0
    approvals_existing: int = 0
    conflicts_resolved: int = 0
    planned_writes: int = 0
    rate_limit_waits: int = 0
    errors: int = 0


class MigrationReport:
    """Aggregated outcome of a migration run."""

    def __init__(
        self, source_project: str, dest_project: str, dry_run: bool = False
    ) -> None:
        self.source_project = source_project
        self.dest_project = dest_project
        self.dry_run = dry_run
        self.start_time = datetime.now()
        self.end_time: datetime | None = None
        self.counts: dict[str, ResourceCounts] = {
            resource_type: ResourceCounts() for resource_type in RESOURCE_TYPES
        }
        self.stats = MigrationRunStats()
        # flag key -> destination environments awaiting approval
        self.approvals: dict[str, list[str]] = {}
        # flag key -> fields that have to be set by hand
        self.skipped_fields: dict[str, list[str]] = {}
        self.errors: list[dict[str, Any]] = []
        self.conflict_resolutions: list[dict[str, str]] = []
        self.conflict_report = "No conflicts encountered during migration."

    def record_resource(self, resource_type: str, result: MigrationResult) -> None:
        """Count a project/environment/view/segment/flag result."""
        counts = self.counts.setdefault(resource_type, ResourceCounts())
        counts.total += 1
        if not result.success:
            counts.failed += 1
        elif result.state == ResourceState.CREATED:
            counts.created += 1
        elif result.state in (ResourceState.EXISTS, ResourceState.CONFLICT_RETRY):
            counts.existing += 1
        elif result.metadata.get("planned"):
            counts.planned += 1
            self.stats.planned_writes += 1
        else:
            counts.skipped += 1

        if result.metadata.get("patch") == PatchState.DRY_RUN.value:
            self.stats.planned_writes += 1

        if not result.success:
            self.add_error(
                resource_type,
                result.source_id,
                result.error or "unknown error",
                env=result.metadata.get("env"),
            )

    def record_flag(self, result: FlagMigrationResult) -> None:
        """Count a flag and the outcome of each of its environments."""
        self.stats.flags_processed += 1
        self.record_resource("flag", result.resource)
        if result.view_link == PatchState.DRY_RUN:
            self.stats.planned_writes += 1

        for env_result in result.environments:
            flag_key = env_result.flag_key
            if env_result.state == PatchState.APPLIED:
                self.stats.environments_applied += 1
            elif env_result.state == PatchState.NOOP:
                self.stats.environments_noop += 1
            elif env_result.state == PatchState.DRY_RUN:
                self.stats.planned_writes += 1
            elif env_result.state in PENDING_APPROVAL_STATES:
                if env_result.state == PatchState.APPROVAL_REQUESTED:
                    self.stats.approvals_created += 1
                else:
                    self.stats.approvals_existing += 1
                self.approvals.setdefault(flag_key, []).append(env_result.env)
            elif env_result.state == PatchState.FAILED:
                self.add_error(
                    "flag", flag_key, env_result.error or "patch failed", env=env_result.env
                )

            if env_result.skipped_fields:
                fields = self.skipped_fields.setdefault(flag_key, [])
                for name in env_result.skipped_fields:
                    if name not in fields:
                        fields.append(name)

    def add_error(
        self, resource_type: str, key: str, error: str, env: str | None = None
    ) -> None:
        entry: dict[str, Any] = {"resource_type": resource_type, "key": key, "error": error}
        if env:
            entry["env"] = env
        self.errors.append(entry)
        self.stats.errors = len(self.errors)

    def record_conflicts(self, resolver: ConflictResolver) -> None:
        resolutions = resolver.get_resolutions()
        self.conflict_resolutions = [asdict(r) for r in resolutions]
        self.stats.conflicts_resolved = len(resolutions)
        self.conflict_report = resolver.get_report()

    def finish(self) -> None:
        self.end_time = datetime.now()

    @property
    def pending_approvals(self) -> list[str]:
        """Flag/environment pairs waiting for approval, e.g. "f1/prod"."""
        return [
            f"{flag}/{env}" for flag, envs in self.approvals.items() for env in envs
        ]

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def status(self) -> str:
        """One of "complete", "pending_approval" or "partial"."""
        if self.errors:
            return "partial"
        if self.approvals:
            return "pending_approval"
        return "complete"

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable form of the report."""
        end_time = self.end_time or datetime.now()
        return {
            "migration_summary": {
                "source_project": self.source_project,
                "dest_project": self.dest_project,
                "dry_run": self.dry_run,
                "status": self.status,
                "success": self.success,
                "start_time": self.start_time.isoformat(),
                "end_time": end_time.isoformat(),
                "duration_seconds": (end_time - self.start_time).total_seconds(),
            },
            "resources": {
                resource_type: asdict(counts)
                for resource_type, counts in self.counts.items()
            },
            "stats": asdict(self.stats),
            "approvals": {flag: list(envs) for flag, envs in self.approvals.items()},
            "pending_approval": self.pending_approvals,
            "skipped_fields": {
                flag: list(fields) for flag, fields in self.skipped_fields.items()
            },
            "conflicts": self.conflict_resolutions,
            "errors": list(self.errors),
        }

    def render_text(self) -> str:
        """Human-readable summary of the run."""
        data = self.to_dict()
        summary = data["migration_summary"]
        status_labels = {
            "complete": "✅ COMPLETE",
            "pending_approval": "⏳ PENDING APPROVAL",
            "partial": "⚠️  PARTIAL",
        }
        lines = [
            "# LaunchDarkly Project Migration Summary",
            "=" * 50,
            "",
            f"Source Project: {self.source_project}",
            f"Destination Project: {self.dest_project}",
            f"Migration Status: {status_labels[self.status]}",
        ]
        if self.dry_run:
            lines.append("Mode: DRY RUN (no changes were written)")
        lines.extend(
            [
                f"Start Time: {summary['start_time']}",
                f"End Time: {summary['end_time']}",
                f"Duration: {summary['duration_seconds']:.2f} seconds",
                "",
                "## Resources",
            ]
        )
        for resource_type, counts in self.counts.items():
            if counts.total == 0:
                continue
            line = (
                f"  - {resource_type}: {counts.total} total "
                f"({counts.created} created, {counts.existing} existing, "
                f"{counts.skipped} skipped, {counts.failed} failed"
            )
            if counts.planned:
                line += f", {counts.planned} planned"
            lines.append(line + ")")

        stats = self.stats
        lines.extend(
            [
                "",
                "## Flag Environments",
                f"  Applied: {stats.environments_applied}",
                f"  Already up to date: {stats.environments_noop}",
                f"  Approval requests created: {stats.approvals_created}",
                f"  Approval requests already open: {stats.approvals_existing}",
            ]
        )
        if self.dry_run:
            lines.append(f"  Planned writes: {stats.planned_writes}")

        lines.extend(["", "## Conflicts", self.conflict_report])

        if self.approvals:
            lines.extend(["", "## Pending Approval"])
            lines.append("The following flags require approval before changes take effect:")
            for flag, envs in self.approvals.items():
                lines.append(f"  - {flag}")
                lines.append(f"    Environments: {', '.join(envs)}")
            lines.append(
                f"  Total: {len(self.pending_approvals)} approval request(s) "
                f"across {len(self.approvals)} flag(s)"
            )

        if self.skipped_fields:
            lines.extend(["", "## Non-Migrated Settings"])
            lines.append("Set these manually after the approval requests are applied:")
            for flag, fields in self.skipped_fields.items():
                lines.append(f"  - {flag}: {', '.join(fields)}")

        if self.errors:
            lines.extend(["", f"## Errors ({len(self.errors)} total)"])
            for error in self.errors:
                where = error["key"]
                if error.get("env"):
                    where = f"{where}/{error['env']}"
                lines.append(f"- {error['resource_type']}: {where}")
                lines.append(f"  Error: {error['error']}")

        return "\n".join(lines) + "\n"

    def write(self, report_dir: Path) -> tuple[Path, Path]:
        """Write the JSON report and the text summary.

        Args:
            report_dir: Directory to write into; created if missing.

        Returns:
            Paths of the JSON report and the text summary.
        """
        report_dir = Path(report_dir)
        report_dir.mkdir(parents=True, exist_ok=True)
        report_path = report_dir / REPORT_FILE
        summary_path = report_dir / SUMMARY_FILE

        with open(report_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        with open(summary_path, "w") as f:
            f.write(self.render_text())

        logger.info(
            "Generated migration report",
            report_path=str(report_path),
            summary_path=str(summary_path),
            status=self.status,
        )
        return report_path, summary_path
