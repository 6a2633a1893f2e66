"""Diff engine comparing the current architecture state with a target."""
from __future__ import annotations

from typing import Any, Iterable, Mapping

from .errors import ArchitectureValidationError
from .types import Architecture, ArchitectureDiff, MapDiff, SetDiff

ROOT_MODULE = "/"


def structurally_equal(left: Any, right: Any) -> bool:
    """Deep equality over JSON values.

    Booleans only equal booleans (``True`` is not ``1``); ints and floats
    compare numerically; mappings and sequences compare element-wise.
    """
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, Mapping) or isinstance(right, Mapping):
        return (
            isinstance(left, Mapping)
            and isinstance(right, Mapping)
            and left.keys() == right.keys()
            and all(structurally_equal(left[key], right[key]) for key in left)
        )
    if isinstance(left, (list, tuple)) or isinstance(right, (list, tuple)):
        return (
            isinstance(left, (list, tuple))
            and isinstance(right, (list, tuple))
            and len(left) == len(right)
            and all(structurally_equal(a, b) for a, b in zip(left, right))
        )
    return left == right


def diff_map(prev: Mapping[str, Any], next: Mapping[str, Any]) -> MapDiff:
    """Compare two id -> definition maps.

    ``changed`` holds keys present in both maps whose values differ under
    structural equality.
    """
    added = sorted(key for key in next if key not in prev)
    removed = sorted(key for key in prev if key not in next)
    changed = sorted(key for key in next if key in prev and not structurally_equal(prev[key], next[key]))
    return MapDiff(added=added, removed=removed, changed=changed)


def diff_set(prev: Iterable[str], next: Iterable[str]) -> SetDiff:
    prev_ids = set(prev)
    next_ids = set(next)
    return SetDiff(added=sorted(next_ids - prev_ids), removed=sorted(prev_ids - next_ids))


def module_path(resource_id: str, separator: str = "/") -> str:
    """Return the module prefix of a resource id, trailing separator included."""
    index = resource_id.rfind(separator)
    if index == -1:
        return ROOT_MODULE
    return resource_id[: index + len(separator)]


def derive_identifier_universe(resource_ids: Iterable[str], separator: str = "/") -> set[str]:
    """Module paths of the given resources plus the resource ids themselves."""
    resource_ids = list(resource_ids)
    universe = {module_path(resource_id, separator) for resource_id in resource_ids}
    universe.update(resource_ids)
    return universe


def compute_diffs(
    state: Architecture | None,
    target: Architecture | None,
    separator: str = "/",
) -> ArchitectureDiff:
    if state is None or target is None:
        raise ArchitectureValidationError("Both the current state and the target architecture must be provided")

    universe = derive_identifier_universe(target.resources, separator)
    return ArchitectureDiff(
        ids=diff_set(state.ids, universe),
        accounts=diff_set(state.accounts, universe),
        services=diff_map(state.services, target.services),
        layers=diff_map(state.layers, target.layers),
        resources=diff_map(state.resources, target.resources),
    )


__all__ = [
    "ROOT_MODULE",
    "structurally_equal",
    "diff_map",
    "diff_set",
    "module_path",
    "derive_identifier_universe",
    "compute_diffs",
]
