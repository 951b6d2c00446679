"""Unit tests for migration time estimates."""

import pytest

from ld_migrate.estimate import (
    ResourceCounts,
    count_resources,
    estimate_migration_time,
    format_duration,
)
from ld_migrate.source import SourceProject

from tests.conftest import SOURCE_PROJECT


def test_count_resources(data_dir):
    counts = count_resources(SourceProject(data_dir, SOURCE_PROJECT))

    assert counts == ResourceCounts(flags=1, segments=1, environments=2)
    assert counts.flag_environments == 2


class TestEstimate:
    """Test the duration arithmetic."""

    def test_default_rate_limit(self):
        """Test 10 flags in 3 environments: 40 requests at 5 per 10 seconds."""
        estimate = estimate_migration_time(
            ResourceCounts(flags=10, segments=4, environments=3)
        )

        assert estimate.flag_requests == 40
        assert estimate.segment_requests == 8
        assert estimate.flag_seconds == 80
        assert estimate.total_seconds == 96
        assert estimate.rate_limit == 5

    def test_custom_rate_limit(self):
        estimate = estimate_migration_time(
            ResourceCounts(flags=10, segments=0, environments=3), rate_limit=20
        )
        assert estimate.flag_seconds == 20

    def test_empty_project(self):
        estimate = estimate_migration_time(ResourceCounts(0, 0, 0))
        assert estimate.total_seconds == 0


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (0, "0 seconds"),
        (1, "1 second"),
        (59, "59 seconds"),
        (61, "1 minute, 1 second"),
        (3725, "1 hour, 2 minutes, 5 seconds"),
        (7200, "2 hours"),
    ],
)
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected
