"""Translation of field-level patches into semantic approval instructions.

Environments that require approval reject JSON patches and only accept
semantic instructions inside an approval request. This module covers the
subset of flag configuration that has an instruction equivalent; everything
else is reported back so it can be applied by hand once approved.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

from ld_migrate.patches import PatchOperation

logger = structlog.get_logger(__name__)

SUPPORTED_FIELDS = frozenset({"on", "offVariation", "fallthrough", "rules"})


@dataclass(slots=True)
class TranslationResult:
    """Instructions for an approval request plus the fields left out."""

    instructions: list[dict[str, Any]] = field(default_factory=list)
    skipped_fields: list[str] = field(default_factory=list)

    def skip(self, name: str) -> None:
        if name not in self.skipped_fields:
            self.skipped_fields.append(name)


def _variation_id(variations: list[dict[str, Any]], index: Any) -> str | None:
    """Map a variation index onto the destination's variation id."""
    if isinstance(index, bool) or not isinstance(index, int):
        return None
    if index < 0 or index >= len(variations):
        return None
    return variations[index].get("_id")


def _rollout_fields(
    rollout: dict[str, Any], variations: list[dict[str, Any]]
) -> dict[str, Any] | None:
    """Build rollout fields; None if any weighted variation does not resolve."""
    weights: dict[str, int] = {}
    for entry in rollout.get("variations") or []:
        variation_id = _variation_id(variations, entry.get("variation"))
        if variation_id is None:
            return None
        weights[variation_id] = entry.get("weight", 0)
    if not weights:
        return None

    fields: dict[str, Any] = {"rolloutWeights": weights}
    if rollout.get("bucketBy"):
        fields["rolloutBucketBy"] = rollout["bucketBy"]
    if rollout.get("contextKind"):
        fields["rolloutContextKind"] = rollout["contextKind"]
    return fields


def _serve_fields(
    target: dict[str, Any], variations: list[dict[str, Any]]
) -> dict[str, Any] | None:
    """Fields describing what a fallthrough or rule serves."""
    if target.get("variation") is not None:
        variation_id = _variation_id(variations, target["variation"])
        return {"variationId": variation_id} if variation_id else None
    if target.get("rollout"):
        return _rollout_fields(target["rollout"], variations)
    return None


def _parse_environment_path(patch: PatchOperation) -> tuple[str, str, list[str]] | None:
    """Split /environments/{env}/{field}/... into its parts."""
    tokens = patch.segments
    if len(tokens) < 3 or tokens[0] != "environments":
        return None
    return tokens[1], tokens[2], tokens[3:]


def translate(
    patch_ops: list[PatchOperation], variations: list[dict[str, Any]]
) -> TranslationResult:
    """Convert environment patches into semantic instructions.

    Args:
        patch_ops: Field-level patches for one flag environment.
        variations: The destination flag's variations, carrying ``_id``.

    Returns:
        The instructions in patch order, and the field names that have no
        instruction equivalent.
    """
    result = TranslationResult()

    for patch in patch_ops:
        parsed = _parse_environment_path(patch)
        if parsed is None:
            result.skip(patch.segments[-1])
            continue

        env_key, name, rest = parsed
        if name not in SUPPORTED_FIELDS:
            result.skip(name)
            continue

        instruction: dict[str, Any] | None = None
        value = patch.value

        if name == "on":
            instruction = {"kind": "turnFlagOn" if value else "turnFlagOff"}

        elif name == "offVariation":
            variation_id = _variation_id(variations, value)
            if variation_id:
                instruction = {"kind": "updateOffVariation", "variationId": variation_id}

        elif name == "fallthrough":
            serve = _serve_fields(value or {}, variations)
            if serve:
                instruction = {"kind": "updateFallthroughVariationOrRollout", **serve}

        elif name == "rules":
            if patch.op != "add" or rest != ["-"]:
                result.skip(name)
                continue
            rule = value or {}
            serve = _serve_fields(rule, variations)
            if serve:
                instruction = {"kind": "addRule", "clauses": rule.get("clauses") or []}
                if rule.get("description"):
                    instruction["description"] = rule["description"]
                instruction.update(serve)

        if instruction is None:
            logger.warning(
                "Unresolved variation, instruction omitted",
                env=env_key,
                field=name,
            )
            continue
        result.instructions.append(instruction)

    return result
