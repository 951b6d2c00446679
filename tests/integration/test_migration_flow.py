"""Integration tests for the migration flow."""

import copy
import json

import httpx
import pytest

from ld_migrate.config import MigrationOptions
from ld_migrate.exceptions import ConfigurationError, ProjectConflictError
from ld_migrate.orchestration import MigrationOrchestrator

from tests.conftest import DEST_PROJECT, SOURCE_PROJECT, FakeLaunchDarkly, write_json


def _writes(fake: FakeLaunchDarkly) -> list[tuple[str, str, object]]:
    return [r for r in fake.requests if r[0] in ("POST", "PATCH", "PUT", "DELETE")]


@pytest.fixture
def run(config, make_client, governor, clock):
    """Run one orchestrator pass against a fake or a handler."""

    async def _run(handler, **options):
        if options:
            config.options = MigrationOptions(**options)
        orchestrator = MigrationOrchestrator(
            config, client=make_client(handler), governor=governor, sleep=clock.sleep
        )
        return await orchestrator.migrate_all()

    return _run


@pytest.mark.asyncio
class TestMigrationFlow:
    """Test complete migration runs against an in-memory destination."""

    async def test_full_migration(self, run, fake_ld):
        report = await run(fake_ld)

        assert report.status == "complete"
        project = fake_ld.projects[DEST_PROJECT]
        assert [env["key"] for env in project["environments"]] == ["production", "test"]
        assert "apiKey" not in project["environments"][0]
        assert (DEST_PROJECT, "payments") in fake_ld.views
        assert fake_ld.segments[(DEST_PROJECT, "production", "vip")]["included"] == [
            "user-1",
            "user-2",
        ]

        flag = fake_ld.flags[(DEST_PROJECT, "f1")]
        assert flag["maintainerId"] is None
        assert flag["viewKeys"] == ["payments"]
        assert flag["environments"]["production"]["on"] is True
        assert flag["environments"]["test"]["fallthrough"] == {"variation": 1}

        assert report.counts["project"].created == 1
        assert report.counts["view"].created == 1
        assert report.counts["segment"].created == 1
        assert report.counts["flag"].created == 1
        assert report.stats.flags_processed == 1
        assert report.stats.environments_applied == 2

    async def test_second_run_is_idempotent(self, run, fake_ld):
        """Test that rerunning against an unchanged destination writes nothing."""
        await run(fake_ld)
        writes = len(_writes(fake_ld))

        report = await run(fake_ld)

        assert len(_writes(fake_ld)) == writes
        assert report.status == "complete"
        assert report.counts["project"].existing == 1
        assert report.counts["flag"].existing == 1
        assert report.stats.environments_noop == 2
        assert report.stats.environments_applied == 0

    async def test_approval_scenario(self, run):
        """Test f1/prod: approval required, both changes become instructions."""
        fake = FakeLaunchDarkly(approval_envs={"prod"})

        report = await run(fake, environment_mapping={"production": "prod"})

        assert [env["key"] for env in fake.projects[DEST_PROJECT]["environments"]] == [
            "prod"
        ]
        (request,) = fake.approvals[(DEST_PROJECT, "f1", "prod")]
        false_id = fake.flags[(DEST_PROJECT, "f1")]["variations"][1]["_id"]
        assert request["instructions"] == [
            {"kind": "turnFlagOn"},
            {"kind": "updateOffVariation", "variationId": false_id},
        ]
        assert request["notifyMemberIds"] == ["member-me"]
        assert report.skipped_fields == {}
        assert report.pending_approvals == ["f1/prod"]
        assert report.status == "pending_approval"
        assert "f1" in report.render_text().split("## Pending Approval")[1]

    async def test_approval_requests_are_not_duplicated(self, run):
        fake = FakeLaunchDarkly(approval_envs={"production"})

        await run(fake)
        report = await run(fake)

        assert len(fake.approvals[(DEST_PROJECT, "f1", "production")]) == 1
        assert report.stats.approvals_created == 0
        assert report.stats.approvals_existing == 1
        assert report.pending_approvals == ["f1/production"]

    async def test_segment_conflict_is_renamed(self, run, fake_ld):
        """Test that a taken segment key ends up as imported-vip."""
        fake_ld.add_project(DEST_PROJECT, ["production", "test"])
        fake_ld.segments[(DEST_PROJECT, "production", "vip")] = {"key": "vip"}

        report = await run(fake_ld, conflict_prefix="imported-")

        assert fake_ld.segments[(DEST_PROJECT, "production", "imported-vip")][
            "included"
        ] == ["user-1", "user-2"]
        assert fake_ld.segments[(DEST_PROJECT, "production", "vip")] == {"key": "vip"}
        assert report.counts["segment"].created == 1
        assert {
            "original_key": "vip",
            "resolved_key": "imported-vip",
            "resource_type": "segment",
            "conflict_prefix": "imported-",
        } in report.conflict_resolutions
        assert 'segment: "vip" → "imported-vip"' in report.conflict_report

    async def test_existing_flag_is_copied_with_prefix(self, run, fake_ld):
        """Test that an unrelated destination flag is left alone."""
        fake_ld.add_project(DEST_PROJECT, ["production", "test"])
        existing = {
            "key": "f1",
            "name": "Someone else's flag",
            "variations": [{"_id": "theirs", "value": "a"}],
            "environments": {
                "production": fake_ld._flag_environment(),
                "test": fake_ld._flag_environment(),
            },
        }
        fake_ld.flags[(DEST_PROJECT, "f1")] = copy.deepcopy(existing)

        report = await run(fake_ld, conflict_prefix="imported-")

        assert fake_ld.flags[(DEST_PROJECT, "f1")] == existing
        copied = fake_ld.flags[(DEST_PROJECT, "imported-f1")]
        assert copied["name"] == "imported-Flag One"
        assert copied["environments"]["production"]["on"] is True
        assert fake_ld.calls("PATCH", f"flags/{DEST_PROJECT}/f1") == []
        assert report.counts["flag"].created == 1
        assert [r["resolved_key"] for r in report.conflict_resolutions] == ["imported-f1"]

        writes = len(_writes(fake_ld))
        rerun = await run(fake_ld, conflict_prefix="imported-")

        assert len(_writes(fake_ld)) == writes
        assert rerun.counts["flag"].existing == 1
        assert rerun.conflict_resolutions == []
        assert fake_ld.flags[(DEST_PROJECT, "f1")] == existing

    async def test_existing_flag_is_updated_without_prefix(self, run, fake_ld):
        fake_ld.add_project(DEST_PROJECT, ["production", "test"])
        fake_ld.flags[(DEST_PROJECT, "f1")] = {
            "key": "f1",
            "variations": [{"_id": "v0", "value": True}, {"_id": "v1", "value": False}],
            "environments": {"production": fake_ld._flag_environment()},
        }

        report = await run(fake_ld)

        assert fake_ld.flags[(DEST_PROJECT, "f1")]["environments"]["production"]["on"] is True
        assert report.counts["flag"].existing == 1
        assert report.conflict_resolutions == []

    async def test_project_conflict_stops_the_run(self, run, fake_ld):
        """Test that a 409 on project creation is fatal."""
        fake_ld.add_project(DEST_PROJECT, ["production"])

        def handler(request):
            if request.method == "GET" and request.url.path.endswith(
                f"/projects/{DEST_PROJECT}"
            ):
                return httpx.Response(404)
            return fake_ld.handler(request)

        with pytest.raises(ProjectConflictError):
            await run(handler)

        assert fake_ld.flags == {}

    async def test_missing_environment_is_created(self, run, fake_ld):
        fake_ld.add_project(DEST_PROJECT, ["production"])

        report = await run(fake_ld)

        assert [env["key"] for env in fake_ld.projects[DEST_PROJECT]["environments"]] == [
            "production",
            "test",
        ]
        assert report.counts["environment"].created == 1
        assert report.counts["project"].existing == 1
        assert report.status == "complete"

    async def test_mapped_environment_must_exist(self, run, fake_ld):
        fake_ld.add_project(DEST_PROJECT, ["production"])

        with pytest.raises(ConfigurationError, match="production → prod"):
            await run(fake_ld, environment_mapping={"production": "prod"})

    async def test_environment_allowlist(self, run, fake_ld):
        report = await run(fake_ld, environments=["test"])

        flag = fake_ld.flags[(DEST_PROJECT, "f1")]
        assert list(flag["environments"]) == ["test"]
        assert report.stats.environments_applied == 1

    async def test_unknown_environments(self, run, fake_ld):
        with pytest.raises(ConfigurationError, match="None of the requested environments"):
            await run(fake_ld, environments=["staging"])
        assert fake_ld.requests == []

    async def test_segments_can_be_disabled(self, run, fake_ld):
        report = await run(fake_ld, migrate_segments=False)

        assert fake_ld.segments == {}
        assert report.counts["segment"].total == 0

    async def test_target_view(self, run, fake_ld):
        await run(fake_ld, target_view="migrated")

        assert (DEST_PROJECT, "migrated") in fake_ld.views
        assert fake_ld.flags[(DEST_PROJECT, "f1")]["viewKeys"] == ["payments", "migrated"]

    async def test_maintainer_mapping(self, run, fake_ld, data_dir):
        write_json(
            data_dir / "mappings" / "maintainer_mapping.json",
            {"source-member": "dest-member"},
        )

        await run(fake_ld, assign_maintainer_ids=True)

        assert fake_ld.flags[(DEST_PROJECT, "f1")]["maintainerId"] == "dest-member"

    async def test_dry_run_writes_nothing(self, run, fake_ld):
        report = await run(fake_ld, dry_run=True)

        assert _writes(fake_ld) == []
        assert fake_ld.calls("GET", "members") == []
        assert report.dry_run is True
        assert report.counts["project"].planned == 1
        assert report.counts["flag"].planned == 1
        assert report.stats.planned_writes > 0
        assert report.status == "complete"

    async def test_failures_do_not_abort_the_run(self, run, fake_ld, data_dir, source_flag):
        """Test that one failing flag is reported and the others still migrate."""
        root = data_dir / "source" / "project" / SOURCE_PROJECT
        write_json(root / "flags.json", ["f1", "f2", "ghost", "f3"])
        write_json(root / "flags" / "f2.json", {**source_flag, "key": "f2"})
        write_json(root / "flags" / "f3.json", {**source_flag, "key": "f3"})

        def handler(request):
            if (
                request.method == "POST"
                and request.url.path.endswith(f"/flags/{DEST_PROJECT}")
                and b'"key": "f2"' in request.content
            ):
                return httpx.Response(500, json={"message": "internal error"})
            return fake_ld.handler(request)

        report = await run(handler)

        assert report.status == "partial"
        assert [e["key"] for e in report.errors] == ["f2"]
        assert (DEST_PROJECT, "f1") in fake_ld.flags
        assert (DEST_PROJECT, "f3") in fake_ld.flags
        assert report.counts["flag"].total == 4
        assert report.counts["flag"].created == 2
        assert report.counts["flag"].failed == 1
        assert report.counts["flag"].skipped == 1

    async def test_missing_project_keys(self, run, fake_ld, config):
        config.destination.project_key = None

        with pytest.raises(ConfigurationError, match="project key are required"):
            await run(fake_ld)

    async def test_rate_limits_are_waited_out(self, run, fake_ld, clock):
        """Test that a 429 mid-run is retried and counted."""
        rejected = []

        def handler(request):
            if request.method == "PATCH" and not rejected:
                rejected.append(request)
                return httpx.Response(429, headers={"Retry-After": "3"})
            return fake_ld.handler(request)

        report = await run(handler)

        assert report.status == "complete"
        assert report.stats.rate_limit_waits == 1
        assert 3.0 in clock.sleeps
        assert fake_ld.flags[(DEST_PROJECT, "f1")]["environments"]["production"]["on"] is True

    async def test_concurrent_flags_keep_source_order(
        self, run, config, governor, data_dir, source_flag, monkeypatch
    ):
        """Test the worker pool: shared governor, source order, isolated failures."""
        fake = FakeLaunchDarkly(approval_envs={"test"})
        root = data_dir / "source" / "project" / SOURCE_PROJECT
        keys = ["f1", "f2", "f3", "f4", "f5"]
        write_json(root / "flags.json", keys)
        for key in keys[1:]:
            write_json(root / "flags" / f"{key}.json", {**source_flag, "key": key})
        config.migration.max_concurrent = 3

        observed = []
        observe = governor.observe

        def counting_observe(route, response):
            observed.append(route)
            observe(route, response)

        monkeypatch.setattr(governor, "observe", counting_observe)

        sent = []

        def handler(request):
            sent.append(request)
            if (
                request.method == "POST"
                and request.url.path.endswith(f"/flags/{DEST_PROJECT}")
                and json.loads(request.content)["key"] in ("f2", "f4")
            ):
                return httpx.Response(500, json={"message": "internal error"})
            return fake.handler(request)

        report = await run(handler)

        assert [e["key"] for e in report.errors] == ["f2", "f4"]
        assert report.pending_approvals == ["f1/test", "f3/test", "f5/test"]
        assert report.counts["flag"].created == 3
        assert report.counts["flag"].failed == 2
        assert report.status == "partial"
        for key in ("f1", "f3", "f5"):
            assert fake.flags[(DEST_PROJECT, key)]["environments"]["production"]["on"] is True

        # Flags were in flight together: creations overlap with later patches
        flag_writes = [
            (method, path)
            for method, path, _ in fake.requests
            if path.startswith(f"flags/{DEST_PROJECT}") and method in ("POST", "PATCH")
        ]
        first_patch = next(i for i, (m, _) in enumerate(flag_writes) if m == "PATCH")
        assert [m for m, _ in flag_writes[:first_patch]].count("POST") >= 2

        assert len(observed) == len(sent)
        assert "flags" in observed
