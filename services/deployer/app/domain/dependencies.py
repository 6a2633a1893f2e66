"""Forward and reverse dependency indexes over resource definitions."""
from __future__ import annotations

from typing import Any, Iterator, Mapping

DependencyIndex = dict[str, list[str]]


def _dependency_edges(definition: Any, consumed_only: bool) -> Iterator[str]:
    if not isinstance(definition, Mapping):
        return
    dependencies = definition.get("dependencies") or {}
    for dependency in dependencies.values():
        if not isinstance(dependency, Mapping):
            continue
        dependency_id = dependency.get("resourceId")
        if not dependency_id:
            continue
        if consumed_only and not dependency.get("output"):
            continue
        yield dependency_id


def build_forward_index(resources: Mapping[str, Any]) -> DependencyIndex:
    """Map each resource to the unique resources it depends on."""
    index: DependencyIndex = {}
    for resource_id, definition in resources.items():
        seen: dict[str, None] = {}
        for dependency_id in _dependency_edges(definition, consumed_only=False):
            seen.setdefault(dependency_id)
        index[resource_id] = list(seen)
    return index


def build_reverse_index(resources: Mapping[str, Any], consumed_only: bool = False) -> DependencyIndex:
    """Map each depended-upon resource to the unique resources depending on it.

    With ``consumed_only`` only edges whose output value is consumed are kept.
    """
    index: dict[str, dict[str, None]] = {}
    for resource_id, definition in resources.items():
        for dependency_id in _dependency_edges(definition, consumed_only):
            index.setdefault(dependency_id, {}).setdefault(resource_id)
    return {dependency_id: list(dependents) for dependency_id, dependents in index.items()}


__all__ = ["DependencyIndex", "build_forward_index", "build_reverse_index"]
