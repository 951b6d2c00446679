"""JSON-patch construction and no-op detection against destination documents."""

from dataclasses import dataclass
from typing import Any

from ld_migrate.fields import (
    CLAUSE_EXCLUDED_FIELDS,
    FLAG_ENVIRONMENT_FIELDS,
    RULE_EXCLUDED_FIELDS,
    strip_fields,
)

PATCH_OPS = frozenset({"add", "replace", "remove"})

_MISSING = object()


@dataclass(frozen=True, slots=True)
class PatchOperation:
    """A generic field-level JSON-patch instruction."""

    path: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in PATCH_OPS:
            raise ValueError(f"Unsupported patch op: {self.op}")

    @property
    def segments(self) -> list[str]:
        """Path split into JSON-pointer tokens."""
        return [
            token.replace("~1", "/").replace("~0", "~")
            for token in self.path.lstrip("/").split("/")
        ]

    def to_dict(self) -> dict[str, Any]:
        data = {"op": self.op, "path": self.path}
        if self.op != "remove":
            data["value"] = self.value
        return data


def build_patch(key: str, op: str, value: Any = None) -> PatchOperation:
    """Build a patch for a field path relative to the document root."""
    return PatchOperation(path="/" + key.lstrip("/"), op=op, value=value)


def clean_rule(rule: dict[str, Any]) -> dict[str, Any]:
    """Strip server-assigned fields from a targeting rule and its clauses."""
    cleaned = strip_fields(rule, RULE_EXCLUDED_FIELDS)
    cleaned["clauses"] = [
        strip_fields(clause, CLAUSE_EXCLUDED_FIELDS)
        for clause in rule.get("clauses") or []
    ]
    return cleaned


def build_rules(rules: list[dict[str, Any]], prefix: str | None = None) -> list[PatchOperation]:
    """Build one append operation per targeting rule.

    Args:
        rules: Source rules.
        prefix: Path prefix, e.g. "environments/production" for flag rules.

    Returns:
        Patches appending each cleaned rule to the rules list.
    """
    path = f"{prefix}/rules/-" if prefix else "rules/-"
    return [build_patch(path, "add", clean_rule(rule)) for rule in rules]


def build_flag_environment_patches(
    env_config: dict[str, Any], dest_env_key: str
) -> list[PatchOperation]:
    """Build the patches that copy one environment's flag configuration.

    Fields are taken in source order and limited to FLAG_ENVIRONMENT_FIELDS.
    """
    prefix = f"environments/{dest_env_key}"
    patches: list[PatchOperation] = []
    for field, value in env_config.items():
        if field not in FLAG_ENVIRONMENT_FIELDS:
            continue
        if field == "rules":
            patches.extend(build_rules(value or [], prefix))
        else:
            patches.append(build_patch(f"{prefix}/{field}", "replace", value))
    return patches


def resolve_pointer(document: Any, tokens: list[str]) -> Any:
    """Walk a JSON document along pointer tokens; returns _MISSING if absent."""
    current = document
    for token in tokens:
        if isinstance(current, dict):
            if token not in current:
                return _MISSING
            current = current[token]
        elif isinstance(current, list):
            try:
                current = current[int(token)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def _is_scalar(value: Any) -> bool:
    return not isinstance(value, dict | list)


def values_match(intended: Any, current: Any, additive: bool = False) -> bool:
    """Whether the destination already holds the intended value.

    Dictionaries match when every intended key matches (extra destination
    keys, such as server-assigned ids, are ignored). Lists of scalars match
    on set equality, or on containment for additive patches. Lists of
    objects match when each intended entry matches a destination entry.
    """
    if current is _MISSING:
        return intended is None
    if isinstance(intended, dict):
        if not isinstance(current, dict):
            return False
        for key, value in intended.items():
            if key.startswith("_"):
                continue
            if key not in current:
                if value is None or value == [] or value == {}:
                    continue
                return False
            if not values_match(value, current[key]):
                return False
        return True
    if isinstance(intended, list):
        if not isinstance(current, list):
            return False
        if all(_is_scalar(item) for item in intended) and all(
            _is_scalar(item) for item in current
        ):
            if additive:
                return all(item in current for item in intended)
            return len(intended) == len(current) and all(
                item in current for item in intended
            )
        if len(intended) != len(current):
            return False
        return all(
            any(values_match(item, candidate) for candidate in current)
            for item in intended
        )
    if isinstance(intended, bool) or isinstance(current, bool):
        return intended is current
    return intended == current


def is_noop(patch: PatchOperation, document: dict[str, Any]) -> bool:
    """Whether applying ``patch`` to ``document`` would change nothing."""
    tokens = patch.segments

    if patch.op == "remove":
        return resolve_pointer(document, tokens) is _MISSING

    if tokens and tokens[-1] == "-":
        # Append to a list: a no-op when an equivalent entry already exists
        target = resolve_pointer(document, tokens[:-1])
        if not isinstance(target, list):
            return False
        return any(values_match(patch.value, entry) for entry in target)

    current = resolve_pointer(document, tokens)
    return values_match(patch.value, current, additive=patch.op == "add")


def filter_noop_patches(
    patches: list[PatchOperation], document: dict[str, Any] | None
) -> list[PatchOperation]:
    """Drop patches that the destination document already satisfies.

    Without a known destination document every patch is kept.
    """
    if document is None:
        return list(patches)
    return [patch for patch in patches if not is_noop(patch, document)]
