"""Key-collision handling for resources created in the destination."""

from dataclasses import dataclass

import structlog

from ld_migrate.exceptions import ConflictLimitError

logger = structlog.get_logger(__name__)

# Creation attempts allowed per resource: unprefixed, then prefixed
MAX_CREATE_ATTEMPTS = 2

REPORT_RULE = "=" * 60


@dataclass(frozen=True, slots=True)
class ConflictResolution:
    """One automatic rename, kept for the end-of-run report."""

    original_key: str
    resolved_key: str
    resource_type: str
    conflict_prefix: str


@dataclass(frozen=True, slots=True)
class ConflictDecision:
    """What to do after a 409 on creation.

    ``retry`` means create again with ``new_key``/``new_name``; otherwise the
    resource is treated as already existing under ``new_key`` and updated.
    """

    retry: bool
    new_key: str
    new_name: str | None = None


def apply_conflict_prefix(original_key: str, prefix: str) -> str:
    """Apply a prefix to a resource key."""
    return f"{prefix}{original_key}"


class ConflictResolver:
    """Tracks key collisions and decides the retry key, once per resource.

    A resource is identified by its type, an optional scope (the environment
    for per-environment resources such as segments) and its original key.
    """

    def __init__(self, conflict_prefix: str | None = None) -> None:
        """Initialize the resolver.

        Args:
            conflict_prefix: Prefix for renamed keys; None disables renaming.
        """
        self.conflict_prefix = conflict_prefix or None
        self._resolutions: list[ConflictResolution] = []
        self._attempts: dict[tuple[str, str | None, str], int] = {}
        self._resolved: dict[tuple[str, str | None, str], str] = {}

    def resolve(
        self,
        resource_type: str,
        original_key: str,
        original_name: str | None = None,
        scope: str | None = None,
        allow_prefix: bool = True,
    ) -> ConflictDecision:
        """Decide how to continue after a creation conflict.

        Args:
            resource_type: "flag", "segment", ...
            original_key: Key from the source project.
            original_name: Name from the source project.
            scope: Environment key for per-environment resources.
            allow_prefix: False for resource types that must keep their key.

        Returns:
            The decision for the next step.

        Raises:
            ConflictLimitError: On a third conflict for the same resource.
        """
        ident = (resource_type, scope, original_key)
        attempt = self._attempts.get(ident, 0) + 1
        self._attempts[ident] = attempt
        current_key = self._resolved.get(ident, original_key)

        if attempt > MAX_CREATE_ATTEMPTS:
            raise ConflictLimitError(resource_type, original_key, attempt)

        if attempt == 1 and allow_prefix and self.conflict_prefix:
            new_key = apply_conflict_prefix(original_key, self.conflict_prefix)
            new_name = (
                f"{self.conflict_prefix}{original_name}"
                if original_name is not None
                else None
            )
            self._resolutions.append(
                ConflictResolution(
                    original_key=original_key,
                    resolved_key=new_key,
                    resource_type=resource_type,
                    conflict_prefix=self.conflict_prefix,
                )
            )
            self._resolved[ident] = new_key
            logger.info(
                "Key conflict, retrying with prefix",
                resource_type=resource_type,
                original_key=original_key,
                resolved_key=new_key,
                scope=scope,
            )
            return ConflictDecision(retry=True, new_key=new_key, new_name=new_name)

        # Either renaming is off or the prefixed key collided too: the
        # resource exists under the current key and is updated in place.
        self._resolved.setdefault(ident, current_key)
        logger.info(
            "Key already exists, will update",
            resource_type=resource_type,
            key=current_key,
            scope=scope,
        )
        return ConflictDecision(retry=False, new_key=current_key)

    def resolved_key(
        self, resource_type: str, original_key: str, scope: str | None = None
    ) -> str:
        """Key a resource ended up with in the destination."""
        return self._resolved.get((resource_type, scope, original_key), original_key)

    def get_resolutions(self) -> list[ConflictResolution]:
        return list(self._resolutions)

    def has_conflicts(self) -> bool:
        return bool(self._resolutions)

    def get_report(self) -> str:
        """Render the conflict resolution report.

        The output only depends on the recorded resolutions, so calling this
        repeatedly yields the same text.
        """
        resolutions = list(self._resolutions)
        if not resolutions:
            return "No conflicts encountered during migration."

        by_type: dict[str, int] = {}
        for resolution in resolutions:
            by_type[resolution.resource_type] = by_type.get(resolution.resource_type, 0) + 1

        lines = [
            REPORT_RULE,
            "CONFLICT RESOLUTION REPORT",
            REPORT_RULE,
            f"Total conflicts resolved: {len(resolutions)}",
            "",
            "Conflicts by resource type:",
        ]
        lines.extend(f"  - {kind}: {count}" for kind, count in by_type.items())
        lines.append("")
        lines.append("Conflict resolutions:")
        lines.extend(
            f'  - {r.resource_type}: "{r.original_key}" → "{r.resolved_key}"'
            for r in resolutions
        )
        lines.append(REPORT_RULE)
        return "\n".join(lines)
