"""Unit tests for the migration report."""

import json

from ld_migrate.conflicts import ConflictResolver
from ld_migrate.report import REPORT_FILE, SUMMARY_FILE, MigrationReport
from ld_migrate.resources import (
    EnvironmentPatchResult,
    FlagMigrationResult,
    MigrationResult,
    PatchState,
    ResourceState,
)


def _flag(key: str, *envs: EnvironmentPatchResult) -> FlagMigrationResult:
    return FlagMigrationResult(
        MigrationResult(success=True, source_id=key, dest_id=key, state=ResourceState.CREATED),
        environments=list(envs),
    )


def _env(flag: str, env: str, state: PatchState, **kwargs) -> EnvironmentPatchResult:
    return EnvironmentPatchResult(flag_key=flag, env=env, state=state, **kwargs)


class TestMigrationReport:
    """Test aggregation of results."""

    def test_complete(self):
        report = MigrationReport("src", "dst")
        report.record_flag(_flag("f1", _env("f1", "prod", PatchState.APPLIED)))

        assert report.status == "complete"
        assert report.success is True
        assert report.counts["flag"].created == 1
        assert report.stats.environments_applied == 1

    def test_pending_approval(self):
        report = MigrationReport("src", "dst")
        report.record_flag(
            _flag(
                "f1",
                _env("f1", "prod", PatchState.APPROVAL_REQUESTED),
                _env("f1", "test", PatchState.NOOP),
            )
        )
        report.record_flag(_flag("f2", _env("f2", "prod", PatchState.APPROVAL_EXISTS)))

        assert report.status == "pending_approval"
        assert report.pending_approvals == ["f1/prod", "f2/prod"]
        assert report.stats.approvals_created == 1
        assert report.stats.approvals_existing == 1
        assert report.stats.environments_noop == 1

    def test_errors_make_it_partial(self):
        """Test that failures are distinguishable from complete success."""
        report = MigrationReport("src", "dst")
        report.record_flag(
            _flag("f1", _env("f1", "prod", PatchState.FAILED, error="Patch rejected"))
        )
        report.record_resource(
            "segment",
            MigrationResult(
                success=False,
                source_id="vip",
                error="boom",
                state=ResourceState.FAILED,
                metadata={"env": "test"},
            ),
        )

        assert report.status == "partial"
        assert report.errors == [
            {"resource_type": "flag", "key": "f1", "error": "Patch rejected", "env": "prod"},
            {"resource_type": "segment", "key": "vip", "error": "boom", "env": "test"},
        ]
        assert report.counts["segment"].failed == 1
        assert report.stats.errors == 2

    def test_resource_counts(self):
        report = MigrationReport("src", "dst", dry_run=True)
        report.record_resource(
            "view",
            MigrationResult(success=True, source_id="v", state=ResourceState.EXISTS),
        )
        report.record_resource(
            "view",
            MigrationResult(
                success=True,
                source_id="w",
                skipped=True,
                state=ResourceState.NOT_EXISTS,
                metadata={"planned": "create"},
            ),
        )
        report.record_resource(
            "segment",
            MigrationResult(
                success=True,
                source_id="big",
                skipped=True,
                metadata={"skip_reason": "unbounded"},
            ),
        )

        assert report.counts["view"].existing == 1
        assert report.counts["view"].planned == 1
        assert report.counts["segment"].skipped == 1
        assert report.stats.planned_writes == 1

    def test_skipped_fields_are_grouped_per_flag(self):
        report = MigrationReport("src", "dst")
        report.record_flag(
            _flag(
                "f1",
                _env("f1", "prod", PatchState.MANUAL, skipped_fields=["trackEvents"]),
                _env(
                    "f1",
                    "test",
                    PatchState.APPROVAL_REQUESTED,
                    skipped_fields=["trackEvents", "targets"],
                ),
            )
        )

        assert report.skipped_fields == {"f1": ["trackEvents", "targets"]}
        assert report.pending_approvals == ["f1/test"]

    def test_conflicts(self):
        resolver = ConflictResolver("imported-")
        resolver.resolve("segment", "vip", scope="production")
        report = MigrationReport("src", "dst")

        report.record_conflicts(resolver)

        assert report.stats.conflicts_resolved == 1
        assert report.conflict_resolutions == [
            {
                "original_key": "vip",
                "resolved_key": "imported-vip",
                "resource_type": "segment",
                "conflict_prefix": "imported-",
            }
        ]
        assert 'segment: "vip" → "imported-vip"' in report.render_text()


class TestReportOutput:
    """Test rendering and files."""

    def test_render_text(self):
        report = MigrationReport("src", "dst")
        report.record_flag(_flag("f1", _env("f1", "prod", PatchState.APPROVAL_REQUESTED)))
        report.finish()

        text = report.render_text()

        assert text.startswith("# LaunchDarkly Project Migration Summary")
        assert "Migration Status: ⏳ PENDING APPROVAL" in text
        assert "## Pending Approval" in text
        assert "  - f1\n    Environments: prod" in text
        assert "## Errors" not in text

    def test_write(self, tmp_path):
        report = MigrationReport("src", "dst", dry_run=True)
        report.record_flag(_flag("f1", _env("f1", "prod", PatchState.DRY_RUN)))
        report.finish()

        report_path, summary_path = report.write(tmp_path / "reports")

        assert report_path.name == REPORT_FILE
        assert summary_path.name == SUMMARY_FILE
        data = json.loads(report_path.read_text())
        assert data["migration_summary"]["status"] == "complete"
        assert data["migration_summary"]["dry_run"] is True
        assert data["stats"]["planned_writes"] == 1
        assert data["resources"]["flag"]["total"] == 1
        assert "DRY RUN" in summary_path.read_text()
