"""Abstract base class for LaunchDarkly resource migrators."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from ld_migrate.client import LaunchDarklyClient
from ld_migrate.config import MigrationConfig
from ld_migrate.conflicts import ConflictResolver
from ld_migrate.exceptions import APIError, ConflictLimitError
from ld_migrate.patches import PatchOperation, filter_noop_patches

logger = structlog.get_logger(__name__)


class ResourceState(str, Enum):
    """Lifecycle of one resource in the destination."""

    NOT_CHECKED = "not_checked"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    CREATED = "created"
    CONFLICT_RETRY = "conflict_retry"  # 409 resolved to a resource that was already there
    FAILED = "failed"


class PatchState(str, Enum):
    """Outcome of copying configuration onto a destination resource."""

    APPLIED = "applied"
    NOOP = "noop"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_EXISTS = "approval_exists"
    MANUAL = "manual"  # approval required but nothing could be translated
    DRY_RUN = "dry_run"
    FAILED = "failed"


@dataclass(slots=True)
class MigrationResult:
    """Result of a resource migration operation."""

    success: bool
    source_id: str
    dest_id: str | None = None
    skipped: bool = False
    error: str | None = None
    state: ResourceState = ResourceState.NOT_CHECKED
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PatchOutcome:
    """Result of one PATCH attempt, after no-op filtering."""

    state: PatchState
    operations: list[PatchOperation] = field(default_factory=list)
    status_code: int | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.state != PatchState.FAILED


def response_error(response: httpx.Response, message: str) -> str:
    return str(
        APIError(message, status_code=response.status_code, response_text=response.text)
    )


class ResourceMigrator(ABC):
    """Abstract base class for resource migrators.

    Provides the steps every resource type shares:
    - Existence lookup by key
    - Creation with conflict handling through the ConflictResolver
    - Post-creation read of the destination document
    - PATCH with no-op filtering and a bounded retry on 404
    - Dry-run short-circuit of every write
    """

    resource_type: ClassVar[str]
    route: ClassVar[str]
    beta: ClassVar[bool] = False
    allow_prefix: ClassVar[bool] = True

    def __init__(
        self,
        client: LaunchDarklyClient,
        resolver: ConflictResolver,
        project_key: str,
        migration_config: MigrationConfig | None = None,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the resource migrator.

        Args:
            client: Client for the destination instance.
            resolver: Conflict resolver shared by the whole run.
            project_key: Destination project key.
            migration_config: Retry settings; defaults when omitted.
            dry_run: Look up resources but never write.
            sleep: Sleep used between 404 retries.
        """
        self.client = client
        self.resolver = resolver
        self.project_key = project_key
        self.migration_config = migration_config or MigrationConfig()
        self.dry_run = dry_run
        self._sleep = sleep
        self._logger = logger.bind(migrator=self.__class__.__name__)

    @abstractmethod
    def resource_path(self, key: str, scope: str | None = None) -> str:
        """API path of one resource."""

    @abstractmethod
    def collection_path(self, scope: str | None = None) -> str:
        """API path resources of this type are created under."""

    async def exists(self, key: str, scope: str | None = None) -> ResourceState:
        """Look a resource up by key.

        Any lookup failure counts as NOT_EXISTS; creation's 409 handling
        catches resources that were there after all.
        """
        try:
            response = await self.client.get(
                self.route, self.resource_path(key, scope), beta=self.beta
            )
        except httpx.HTTPError as e:
            self._logger.warning("Lookup failed, assuming absent", key=key, error=str(e))
            return ResourceState.NOT_EXISTS
        if response.status_code == 200:
            return ResourceState.EXISTS
        return ResourceState.NOT_EXISTS

    async def fetch(self, key: str, scope: str | None = None) -> dict[str, Any] | None:
        """Read a resource back from the destination; None if unavailable."""
        try:
            return await self.client.get_json(
                self.route, self.resource_path(key, scope), beta=self.beta
            )
        except (APIError, httpx.HTTPError) as e:
            self._logger.warning("Could not read resource", key=key, error=str(e))
            return None

    async def find_existing(self, key: str, scope: str | None = None) -> str | None:
        """Return the destination key under which the resource already exists.

        With a conflict prefix configured, a prefixed copy from an earlier run
        wins over an unrelated resource holding the original key.
        """
        prefix = self.resolver.conflict_prefix if self.allow_prefix else None
        if prefix:
            prefixed = f"{prefix}{key}"
            if await self.exists(prefixed, scope) == ResourceState.EXISTS:
                return prefixed
        if await self.exists(key, scope) == ResourceState.EXISTS:
            return key
        return None

    def identity(self, document: dict[str, Any]) -> tuple[Any, ...]:
        """Fields that tell a migrated copy apart from an unrelated resource."""
        return (document.get("name"),)

    async def is_migrated_copy(self, payload: dict[str, Any], scope: str | None) -> bool:
        """Whether the resource holding the source key came from this source."""
        current = await self.fetch(payload["key"], scope)
        return current is not None and self.identity(current) == self.identity(payload)

    async def ensure(
        self, payload: dict[str, Any], scope: str | None = None
    ) -> MigrationResult:
        """Make sure a resource exists in the destination.

        With a prefix configured, a resource holding the source key whose
        identity differs from the source counts as a conflict: a prefixed copy
        is created instead of overwriting it.

        Args:
            payload: Creation body; must contain "key".
            scope: Environment key for per-environment resources.

        Returns:
            Result whose ``dest_id`` is the key to use for later updates.
        """
        source_key = payload["key"]
        existing_key = await self.find_existing(source_key, scope)
        body = dict(payload)

        if (
            existing_key == source_key
            and self.allow_prefix
            and self.resolver.conflict_prefix
            and not await self.is_migrated_copy(payload, scope)
        ):
            try:
                decision = self.resolver.resolve(
                    self.resource_type,
                    source_key,
                    payload.get("name"),
                    scope=scope,
                    allow_prefix=self.allow_prefix,
                )
            except ConflictLimitError as e:
                return self._conflict_limit_result(source_key, scope, e)
            if decision.retry:
                body["key"] = decision.new_key
                if decision.new_name is not None:
                    body["name"] = decision.new_name
                existing_key = None
            else:
                existing_key = decision.new_key

        if existing_key is not None:
            self._logger.info(
                f"Found existing {self.resource_type}", key=existing_key, scope=scope
            )
            return MigrationResult(
                success=True,
                source_id=source_key,
                dest_id=existing_key,
                skipped=True,
                state=ResourceState.EXISTS,
                metadata={"skip_reason": "already_exists"},
            )

        if self.dry_run:
            self._logger.info(
                f"[dry run] Would create {self.resource_type}", key=body["key"], scope=scope
            )
            metadata = {"planned": "create"}
            if body["key"] != source_key:
                metadata["renamed_from"] = source_key
            return MigrationResult(
                success=True,
                source_id=source_key,
                dest_id=body["key"],
                skipped=True,
                state=ResourceState.NOT_EXISTS,
                metadata=metadata,
            )

        return await self.create(body, scope, source_key=source_key)

    def _conflict_limit_result(
        self, source_key: str, scope: str | None, error: ConflictLimitError
    ) -> MigrationResult:
        self._logger.error(str(error), key=source_key, scope=scope)
        return MigrationResult(
            success=False,
            source_id=source_key,
            error=str(error),
            state=ResourceState.FAILED,
        )

    async def create(
        self,
        payload: dict[str, Any],
        scope: str | None = None,
        source_key: str | None = None,
    ) -> MigrationResult:
        """POST a resource, renaming it once on a key conflict.

        ``source_key`` is the key from the source project when ``payload``
        already carries a renamed key.
        """
        source_key = source_key or payload["key"]
        body = dict(payload)

        while True:
            try:
                response = await self.client.post(
                    self.route, self.collection_path(scope), body, beta=self.beta
                )
            except httpx.HTTPError as e:
                error = f"Failed to create {self.resource_type}: {e}"
                self._logger.error(error, key=body["key"], scope=scope)
                return MigrationResult(
                    success=False,
                    source_id=source_key,
                    error=error,
                    state=ResourceState.FAILED,
                )

            if response.status_code in (200, 201):
                self._logger.info(
                    f"✅ Created {self.resource_type}", key=body["key"], scope=scope
                )
                metadata = {}
                if body["key"] != source_key:
                    metadata["renamed_from"] = source_key
                return MigrationResult(
                    success=True,
                    source_id=source_key,
                    dest_id=body["key"],
                    state=ResourceState.CREATED,
                    metadata=metadata,
                )

            if response.status_code == 409:
                try:
                    decision = self.resolver.resolve(
                        self.resource_type,
                        source_key,
                        payload.get("name"),
                        scope=scope,
                        allow_prefix=self.allow_prefix,
                    )
                except ConflictLimitError as e:
                    return self._conflict_limit_result(source_key, scope, e)
                if decision.retry:
                    body["key"] = decision.new_key
                    if decision.new_name is not None:
                        body["name"] = decision.new_name
                    continue
                return MigrationResult(
                    success=True,
                    source_id=source_key,
                    dest_id=decision.new_key,
                    skipped=True,
                    state=ResourceState.CONFLICT_RETRY,
                    metadata={"skip_reason": "conflict"},
                )

            error = response_error(response, f"Failed to create {self.resource_type}")
            self._logger.error(
                f"Failed to create {self.resource_type}",
                key=body["key"],
                scope=scope,
                status=response.status_code,
            )
            return MigrationResult(
                success=False,
                source_id=source_key,
                error=error,
                state=ResourceState.FAILED,
            )

    async def _send_patch(self, path: str, body: list[dict[str, Any]]) -> httpx.Response:
        """PATCH, retrying a bounded number of times while the API answers 404."""

        def log_retry(retry_state) -> None:
            self._logger.info(
                "Resource not found yet, retrying patch",
                path=path,
                attempt=retry_state.attempt_number,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.migration_config.not_found_retries + 1),
            wait=wait_fixed(self.migration_config.not_found_delay),
            retry=retry_if_result(lambda response: response.status_code == 404),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            before_sleep=log_retry,
            sleep=self._sleep,
        )
        return await retrying(self.client.patch, self.route, path, body)

    async def apply_patch(
        self,
        path: str,
        operations: list[PatchOperation],
        current: dict[str, Any] | None = None,
    ) -> PatchOutcome:
        """Send the operations the destination does not already satisfy.

        Args:
            path: API path of the resource.
            operations: Field-level patches.
            current: Destination document used for no-op detection.

        Returns:
            The outcome. A non-2xx status is reported as FAILED with the
            status code so callers can branch on it.
        """
        remaining = filter_noop_patches(operations, current)
        if not remaining:
            return PatchOutcome(state=PatchState.NOOP)

        if self.dry_run:
            self._logger.info(
                "[dry run] Would patch", path=path, operations=len(remaining)
            )
            return PatchOutcome(state=PatchState.DRY_RUN, operations=remaining)

        try:
            response = await self._send_patch(path, [op.to_dict() for op in remaining])
        except httpx.HTTPError as e:
            return PatchOutcome(
                state=PatchState.FAILED, operations=remaining, error=str(e)
            )

        if 200 <= response.status_code < 300:
            return PatchOutcome(
                state=PatchState.APPLIED,
                operations=remaining,
                status_code=response.status_code,
            )
        return PatchOutcome(
            state=PatchState.FAILED,
            operations=remaining,
            status_code=response.status_code,
            error=response_error(response, "Patch rejected"),
        )
