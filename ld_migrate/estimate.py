"""Rough migration duration estimate from the extracted source project."""

import math
from dataclasses import dataclass

from ld_migrate.source import SourceProject

# Default flag write limit: requests per rate-limit window
DEFAULT_FLAG_RATE_LIMIT = 5

RATE_LIMIT_WINDOW_SECONDS = 10

# Headroom for retries and lookups
ESTIMATE_BUFFER = 1.2


@dataclass(slots=True)
class ResourceCounts:
    flags: int
    segments: int
    environments: int

    @property
    def flag_environments(self) -> int:
        return self.flags * self.environments


@dataclass(slots=True)
class TimeEstimate:
    """Estimated duration in whole seconds, with its inputs."""

    total_seconds: int
    flag_seconds: int
    segment_seconds: int
    flag_requests: int
    segment_requests: int
    rate_limit: int
    counts: ResourceCounts


def count_resources(source: SourceProject) -> ResourceCounts:
    """Count flags, environments and segments across all environments."""
    environment_keys = source.environment_keys
    segments = sum(len(source.load_segments(key)) for key in environment_keys)
    return ResourceCounts(
        flags=len(source.flag_keys),
        segments=segments,
        environments=len(environment_keys),
    )


def estimate_migration_time(
    counts: ResourceCounts, rate_limit: int | None = None
) -> TimeEstimate:
    """Estimate how long a migration takes under the flag write rate limit.

    Each flag costs one create plus one patch per environment. Segment
    writes are not rate limited, so they add requests but no time.

    Args:
        counts: Resource counts of the source project.
        rate_limit: Flag requests allowed per 10 second window.

    Returns:
        The estimate.
    """
    rate = rate_limit or DEFAULT_FLAG_RATE_LIMIT
    flag_requests = counts.flags * (1 + counts.environments)
    segment_requests = counts.segments * 2
    flag_seconds = math.ceil(flag_requests / rate) * RATE_LIMIT_WINDOW_SECONDS
    segment_seconds = 0
    return TimeEstimate(
        total_seconds=math.ceil((flag_seconds + segment_seconds) * ESTIMATE_BUFFER),
        flag_seconds=flag_seconds,
        segment_seconds=segment_seconds,
        flag_requests=flag_requests,
        segment_requests=segment_requests,
        rate_limit=rate,
        counts=counts,
    )


def format_duration(seconds: int) -> str:
    """Render seconds as e.g. "1 hour, 2 minutes, 3 seconds"."""
    hours, remainder = divmod(int(seconds), 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    for value, unit in ((hours, "hour"), (minutes, "minute"), (secs, "second")):
        if value > 0:
            parts.append(f"{value} {unit}{'s' if value != 1 else ''}")
    return ", ".join(parts) or "0 seconds"
