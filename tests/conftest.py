"""Shared pytest fixtures for the migration tool tests."""

import asyncio
import copy
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from ld_migrate.client import LaunchDarklyClient
from ld_migrate.config import (
    Config,
    InstanceConfig,
    MigrationConfig,
    MigrationOptions,
)
from ld_migrate.rate_limits import RateGovernor

SOURCE_PROJECT = "source-project"
DEST_PROJECT = "dest-project"


class FakeClock:
    """Deterministic clock whose sleep advances time instead of waiting."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        """Advance time, then yield so concurrent tasks interleave."""
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _apply_json_patch(document: dict[str, Any], operations: list[dict[str, Any]]) -> None:
    for operation in operations:
        tokens = operation["path"].lstrip("/").split("/")
        parent: Any = document
        for token in tokens[:-1]:
            parent = parent[int(token)] if isinstance(parent, list) else parent.setdefault(token, {})
        last = tokens[-1]
        if operation["op"] == "remove":
            if isinstance(parent, list):
                parent.pop(int(last))
            else:
                parent.pop(last, None)
        elif isinstance(parent, list):
            value = copy.deepcopy(operation["value"])
            if last == "-":
                parent.append(value)
            else:
                parent.insert(int(last), value)
        else:
            parent[last] = copy.deepcopy(operation["value"])


class FakeLaunchDarkly:
    """In-memory LaunchDarkly API served through httpx.MockTransport.

    Covers the endpoints the migrator uses. Flag environments listed in
    ``approval_envs`` reject patches with 405, as approval-gated
    environments do.
    """

    def __init__(self, approval_envs: set[str] | None = None) -> None:
        self.projects: dict[str, dict[str, Any]] = {}
        self.flags: dict[tuple[str, str], dict[str, Any]] = {}
        self.segments: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.views: dict[tuple[str, str], dict[str, Any]] = {}
        self.approvals: dict[tuple[str, str, str], list[dict[str, Any]]] = {}
        self.approval_envs = approval_envs or set()
        self.member_id: str | None = "member-me"
        self.requests: list[tuple[str, str, Any]] = []
        self._ids = 0

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}-{self._ids}"

    def calls(self, method: str, prefix: str = "") -> list[tuple[str, str, Any]]:
        return [r for r in self.requests if r[0] == method and r[1].startswith(prefix)]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add_project(self, key: str, environments: list[str]) -> None:
        self.projects[key] = {
            "key": key,
            "name": key,
            "environments": [{"key": env, "name": env} for env in environments],
        }

    def _flag_environment(self) -> dict[str, Any]:
        return {
            "on": False,
            "archived": False,
            "offVariation": 0,
            "fallthrough": {"variation": 0},
            "targets": [],
            "contextTargets": [],
            "rules": [],
            "prerequisites": [],
            "trackEvents": False,
            "trackEventsFallthrough": False,
            "salt": "generated",
            "version": 1,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api/v2/")
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))
        parts = path.split("/")
        method = request.method

        if parts[0] == "members" and parts[1:] == ["me"]:
            if self.member_id is None:
                return httpx.Response(404)
            return httpx.Response(200, json={"_id": self.member_id, "email": "me@example.com"})

        if parts[0] == "projects":
            return self._projects(method, parts[1:], body)
        if parts[0] == "flags":
            return self._flags(method, parts[1:], body)
        if parts[0] == "segments":
            return self._segments(method, parts[1:], body)
        return httpx.Response(404)

    def _projects(self, method: str, parts: list[str], body: Any) -> httpx.Response:
        if not parts:
            if method == "POST":
                if body["key"] in self.projects:
                    return httpx.Response(409, json={"message": "key exists"})
                self.projects[body["key"]] = copy.deepcopy(body)
                return httpx.Response(201, json=body)
            return httpx.Response(200, json={"items": list(self.projects.values())})

        project = self.projects.get(parts[0])
        if project is None:
            return httpx.Response(404)
        if len(parts) == 1:
            return httpx.Response(200, json=project)

        if parts[1] == "environments":
            envs = project["environments"]
            if len(parts) == 2:
                if method == "POST":
                    if any(env["key"] == body["key"] for env in envs):
                        return httpx.Response(409)
                    envs.append(copy.deepcopy(body))
                    return httpx.Response(201, json=body)
                return httpx.Response(200, json={"items": envs})
            found = [env for env in envs if env["key"] == parts[2]]
            return httpx.Response(200, json=found[0]) if found else httpx.Response(404)

        if parts[1] == "views":
            if len(parts) == 2 and method == "POST":
                if (parts[0], body["key"]) in self.views:
                    return httpx.Response(409)
                self.views[(parts[0], body["key"])] = body
                return httpx.Response(201, json=body)
            view = self.views.get((parts[0], parts[2])) if len(parts) > 2 else None
            return httpx.Response(200, json=view) if view else httpx.Response(404)

        if parts[1] == "flags" and parts[-1] == "approval-requests":
            ident = (parts[0], parts[2], parts[4])
            if method == "POST":
                request = {"_id": self._next_id("approval"), "status": "pending", **body}
                self.approvals.setdefault(ident, []).append(request)
                return httpx.Response(201, json=request)
            return httpx.Response(200, json={"items": self.approvals.get(ident, [])})

        return httpx.Response(404)

    def _flags(self, method: str, parts: list[str], body: Any) -> httpx.Response:
        project_key = parts[0]
        if len(parts) == 1 and method == "POST":
            if (project_key, body["key"]) in self.flags:
                return httpx.Response(409, json={"message": "key exists"})
            flag = copy.deepcopy(body)
            flag["variations"] = [
                {**variation, "_id": self._next_id("var")}
                for variation in body.get("variations", [])
            ]
            project = self.projects.get(project_key, {"environments": []})
            flag["environments"] = {
                env["key"]: self._flag_environment()
                for env in project["environments"]
            }
            self.flags[(project_key, body["key"])] = flag
            return httpx.Response(201, json=flag)

        flag = self.flags.get((project_key, parts[1])) if len(parts) > 1 else None
        if flag is None:
            return httpx.Response(404)
        if method == "PATCH":
            envs = {
                op["path"].split("/")[2]
                for op in body
                if op["path"].startswith("/environments/")
            }
            if envs & self.approval_envs:
                return httpx.Response(405, json={"message": "approval required"})
            _apply_json_patch(flag, body)
            return httpx.Response(200, json=flag)
        return httpx.Response(200, json=flag)

    def _segments(self, method: str, parts: list[str], body: Any) -> httpx.Response:
        project_key, env = parts[0], parts[1]
        if len(parts) == 2 and method == "POST":
            ident = (project_key, env, body["key"])
            if ident in self.segments:
                return httpx.Response(409)
            self.segments[ident] = {**copy.deepcopy(body), "included": [], "excluded": [], "rules": []}
            return httpx.Response(201, json=body)

        segment = self.segments.get((project_key, env, parts[2])) if len(parts) > 2 else None
        if segment is None:
            return httpx.Response(404)
        if method == "PATCH":
            _apply_json_patch(segment, body)
        return httpx.Response(200, json=segment)


@pytest.fixture
def clock():
    """A fake clock shared by the governor and the 404 retry sleep."""
    return FakeClock()


@pytest.fixture
def governor(clock):
    """A rate governor that never really sleeps."""
    return RateGovernor(clock=clock, sleep=clock.sleep, jitter=lambda: 0.0)


@pytest.fixture
def migration_config():
    """Create a test migration configuration."""
    return MigrationConfig(
        retry_attempts=2,
        retry_delay=0.1,
        max_concurrent=2,
        not_found_retries=2,
        not_found_delay=2.0,
    )


@pytest.fixture
def dest_instance():
    return InstanceConfig(project_key=DEST_PROJECT, api_key="api-dest-key")


@pytest.fixture
def fake_ld():
    """In-memory destination instance."""
    return FakeLaunchDarkly()


@pytest.fixture
def make_client(dest_instance, migration_config, governor, clock):
    """Build a client whose requests are served by the given handler or fake."""

    def _make(handler) -> LaunchDarklyClient:
        transport = (
            handler.transport
            if isinstance(handler, FakeLaunchDarkly)
            else httpx.MockTransport(handler)
        )
        return LaunchDarklyClient(
            dest_instance,
            migration_config,
            governor,
            transport=transport,
            retry_sleep=clock.sleep,
        )

    return _make


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


@pytest.fixture
def source_flag():
    """The f1 flag: boolean, on in production with the false variation as off."""
    return {
        "key": "f1",
        "name": "Flag One",
        "kind": "boolean",
        "_version": 4,
        "temporary": False,
        "tags": ["checkout"],
        "description": "First flag",
        "maintainerId": "source-member",
        "viewKeys": ["payments"],
        "variations": [
            {"_id": "src-var-true", "value": True, "name": "True"},
            {"_id": "src-var-false", "value": False, "name": "False"},
        ],
        "environments": {
            "production": {
                "on": True,
                "offVariation": 1,
                "rules": [],
                "salt": "abc",
                "version": 12,
                "_site": {"href": "/flags"},
            },
            "test": {
                "on": False,
                "offVariation": 1,
                "fallthrough": {"variation": 1},
                "trackEvents": True,
                "salt": "def",
            },
        },
    }


@pytest.fixture
def data_dir(tmp_path, source_flag):
    """Extracted source project on disk."""
    root = tmp_path / "data"
    project_root = root / "source" / "project" / SOURCE_PROJECT
    write_json(
        project_root / "project.json",
        {
            "key": SOURCE_PROJECT,
            "name": "Source Project",
            "tags": ["team-a"],
            "includeInSnippetByDefault": False,
            "environments": {
                "items": [
                    {
                        "_id": "env-1",
                        "key": "production",
                        "name": "Production",
                        "color": "417505",
                        "apiKey": "sdk-secret",
                        "confirmChanges": True,
                    },
                    {
                        "_id": "env-2",
                        "key": "test",
                        "name": "Test",
                        "color": "f5a623",
                        "apiKey": "sdk-secret-2",
                    },
                ]
            },
        },
    )
    write_json(project_root / "flags.json", ["f1"])
    write_json(project_root / "flags" / "f1.json", source_flag)
    write_json(
        project_root / "segment-production.json",
        {
            "items": [
                {
                    "key": "vip",
                    "name": "VIP",
                    "included": ["user-1", "user-2"],
                    "excluded": [],
                    "rules": [],
                    "version": 3,
                }
            ]
        },
    )
    write_json(project_root / "segment-test.json", {"items": []})
    return root


@pytest.fixture
def config(data_dir, tmp_path, migration_config, dest_instance):
    """Create a test configuration."""
    return Config(
        source=InstanceConfig(project_key=SOURCE_PROJECT, api_key="api-source-key"),
        destination=dest_instance,
        migration=migration_config,
        options=MigrationOptions(),
        data_dir=data_dir,
        report_dir=tmp_path / "reports",
    )
