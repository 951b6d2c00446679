"""Reader for previously extracted source project data.

Layout below the data directory::

    source/project/{projectKey}/project.json
    source/project/{projectKey}/flags.json          (list of flag keys)
    source/project/{projectKey}/flags/{flagKey}.json
    source/project/{projectKey}/segment-{envKey}.json
    mappings/maintainer_mapping.json                 (optional)
"""

import json
from pathlib import Path
from typing import Any

import structlog

from ld_migrate.exceptions import SourceDataError

logger = structlog.get_logger(__name__)


def _items(value: Any) -> list[dict[str, Any]]:
    """Unwrap an API collection ({"items": [...]}) or a plain list."""
    if isinstance(value, dict):
        value = value.get("items")
    return list(value or [])


class SourceProject:
    """Read-only access to one extracted source project."""

    def __init__(self, data_dir: Path, project_key: str) -> None:
        self.data_dir = Path(data_dir)
        self.project_key = project_key
        self.root = self.data_dir / "source" / "project" / project_key
        self._project: dict[str, Any] | None = None
        self._flag_keys: list[str] | None = None
        self._flags: dict[str, dict[str, Any] | None] = {}
        self._logger = logger.bind(project=project_key, root=str(self.root))

    def _read_json(self, path: Path, required: bool = True) -> Any:
        if not path.exists():
            if required:
                raise SourceDataError(
                    f"Missing source data file: {path}. "
                    "Extract the source project before migrating."
                )
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SourceDataError(f"Could not read {path}: {e}") from e

    def load(self) -> None:
        """Read the required files, raising SourceDataError if any is unusable."""
        self._logger.info(
            "Loaded source project",
            environments=len(self.environments),
            flags=len(self.flag_keys),
        )

    @property
    def project(self) -> dict[str, Any]:
        """The project document, including its environments."""
        if self._project is None:
            data = self._read_json(self.root / "project.json")
            if not isinstance(data, dict):
                raise SourceDataError(f"Unexpected project document in {self.root}")
            self._project = data
        return self._project

    @property
    def environments(self) -> list[dict[str, Any]]:
        """Source environments in declared order."""
        return _items(self.project.get("environments"))

    @property
    def environment_keys(self) -> list[str]:
        return [env["key"] for env in self.environments if env.get("key")]

    @property
    def flag_keys(self) -> list[str]:
        """Flag keys in extraction order."""
        if self._flag_keys is None:
            data = self._read_json(self.root / "flags.json")
            if not isinstance(data, list):
                raise SourceDataError(
                    f"Expected a list of flag keys in {self.root / 'flags.json'}"
                )
            self._flag_keys = [str(key) for key in data]
        return self._flag_keys

    def load_flag(self, flag_key: str) -> dict[str, Any] | None:
        """Load one flag document; None (with a warning) if it was not extracted."""
        if flag_key not in self._flags:
            data = self._read_json(self.root / "flags" / f"{flag_key}.json", required=False)
            if data is None:
                self._logger.warning("Flag data not found, skipping", flag=flag_key)
            self._flags[flag_key] = data
        return self._flags[flag_key]

    def load_segments(self, env_key: str) -> list[dict[str, Any]]:
        """Segments of one source environment; empty if none were extracted."""
        data = self._read_json(self.root / f"segment-{env_key}.json", required=False)
        if data is None:
            self._logger.warning("Segment data not found, skipping", env=env_key)
            return []
        return _items(data)

    def view_keys(self) -> list[str]:
        """Unique view keys referenced by source flags, in first-seen order."""
        keys: list[str] = []
        for flag_key in self.flag_keys:
            flag = self.load_flag(flag_key) or {}
            for view_key in flag.get("viewKeys") or []:
                if view_key not in keys:
                    keys.append(view_key)
        return keys

    def load_maintainer_mapping(self) -> dict[str, str]:
        """Source member id -> destination member id, or empty if absent."""
        path = self.data_dir / "mappings" / "maintainer_mapping.json"
        data = self._read_json(path, required=False)
        if data is None:
            self._logger.info("No maintainer mapping found", path=str(path))
            return {}
        if not isinstance(data, dict):
            raise SourceDataError(f"Maintainer mapping must be an object: {path}")
        return {str(k): str(v) for k, v in data.items() if v}
