"""Which source fields are carried into destination payloads, per resource type.

Source documents are the API's own responses, so they carry server-managed
and volatile fields (ids, versions, salts, timestamps, links) that the
destination would reject or that would make patches non-idempotent. Each
resource type lists the fields it copies; everything else is dropped.
"""

from typing import Any

# Payload fields for POST /projects/{project}/environments and project creation
ENVIRONMENT_CREATE_FIELDS: tuple[str, ...] = (
    "name",
    "key",
    "color",
    "defaultTtl",
    "confirmChanges",
    "secureMode",
    "defaultTrackEvents",
    "tags",
)

# Fields always present on an environment payload, even when falsy
ENVIRONMENT_REQUIRED_FIELDS: frozenset[str] = frozenset({"name", "key", "color"})

# Payload fields for POST /segments/{project}/{env}
SEGMENT_CREATE_FIELDS: tuple[str, ...] = ("name", "key", "tags", "description")

# Segment targeting copied with JSON patches after creation
SEGMENT_PATCH_FIELDS: tuple[str, ...] = ("included", "excluded")

# Payload fields for POST /flags/{project}, copied whenever the source has them.
# key/name/variations/maintainerId/clientSideAvailability are handled by the
# flag migrator because they need renaming or mapping.
FLAG_CREATE_FIELDS: tuple[str, ...] = ("temporary", "tags", "description")

# Flag payload fields copied only when set
FLAG_OPTIONAL_FIELDS: tuple[str, ...] = ("customProperties", "defaults")

# Per-environment flag configuration that is migrated with JSON patches.
# Server-managed fields (salt, sel, version, lastModified, _site, _access,
# _summary, _environmentName, _debugEventsUntilDate) are not listed.
FLAG_ENVIRONMENT_FIELDS: frozenset[str] = frozenset(
    {
        "on",
        "archived",
        "offVariation",
        "fallthrough",
        "targets",
        "contextTargets",
        "rules",
        "prerequisites",
        "trackEvents",
        "trackEventsFallthrough",
    }
)

# Server-assigned fields stripped from targeting rules before re-adding them
RULE_EXCLUDED_FIELDS: frozenset[str] = frozenset(
    {"_id", "clauses", "generation", "deleted", "version", "ref"}
)

# Server-assigned fields stripped from rule clauses
CLAUSE_EXCLUDED_FIELDS: frozenset[str] = frozenset({"_id"})

# Server-assigned fields stripped from variations before flag creation
VARIATION_EXCLUDED_FIELDS: frozenset[str] = frozenset({"_id"})


def select_fields(
    data: dict[str, Any],
    fields: tuple[str, ...] | frozenset[str],
    required: frozenset[str] = frozenset(),
) -> dict[str, Any]:
    """Copy the listed fields from a source document.

    Optional fields are only copied when truthy, matching how the API treats
    missing values; required fields are always copied.

    Args:
        data: Source document.
        fields: Field names to copy. Source order is kept for sets.
        required: Fields copied even when falsy or missing.

    Returns:
        New dictionary with the selected fields.
    """
    ordered = fields if isinstance(fields, tuple) else [k for k in data if k in fields]
    selected: dict[str, Any] = {}
    for field in ordered:
        if field in required:
            selected[field] = data.get(field)
        elif data.get(field):
            selected[field] = data[field]
    return selected


def strip_fields(data: dict[str, Any], excluded: frozenset[str]) -> dict[str, Any]:
    """Return a copy of ``data`` without the excluded fields."""
    return {k: v for k, v in data.items() if k not in excluded}
