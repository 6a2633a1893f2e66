"""Wave scheduling for resource creation/update and deletion.

A wave is a batch of resource ids with no ordering constraint between them.
Waves are extracted repeatedly from a pending set: an id is ready when none of
its blockers is still pending. Blockers are the resources it depends on when
creating or updating, and the resources depending on it when deleting.

The number of passes is bounded by the size of the initial pending set. When
a pass makes no progress the remaining ids can never become ready, which means
they contain a dependency cycle.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping

import structlog

from .dependencies import DependencyIndex, build_forward_index, build_reverse_index
from .errors import DependencyCycleError
from .types import MapDiff

logger = structlog.get_logger(__name__)

CREATE_UPDATE = "creation or update"
DELETE = "deletion"

_WHITE, _GREY, _BLACK = 0, 1, 2


def expand_dependents(seed: Iterable[str], dependents: DependencyIndex) -> list[str]:
    """Close ``seed`` over the dependents relation.

    Every id is visited at most once; the returned list keeps seed order first.
    """
    visited: dict[str, None] = dict.fromkeys(seed)
    stack = list(visited)
    while stack:
        current = stack.pop()
        for child in dependents.get(current, ()):
            if child not in visited:
                visited[child] = None
                stack.append(child)
    return list(visited)


def find_cycle(nodes: Iterable[str], edges: DependencyIndex) -> list[str]:
    """Return one cycle among ``nodes`` as a closed path, or an empty list."""
    colour = {node: _WHITE for node in nodes}
    for root in sorted(colour):
        if colour[root] != _WHITE:
            continue
        colour[root] = _GREY
        path = [root]
        iterators = [iter(edges.get(root, ()))]
        while iterators:
            for neighbour in iterators[-1]:
                state = colour.get(neighbour)
                if state == _GREY:
                    return path[path.index(neighbour) :] + [neighbour]
                if state == _WHITE:
                    colour[neighbour] = _GREY
                    path.append(neighbour)
                    iterators.append(iter(edges.get(neighbour, ())))
                    break
            else:
                colour[path.pop()] = _BLACK
                iterators.pop()
    return []


def extract_waves(pending: Iterable[str], blockers: DependencyIndex, direction: str) -> list[list[str]]:
    remaining: dict[str, None] = dict.fromkeys(pending)
    waves: list[list[str]] = []
    max_passes = len(remaining)

    for _ in range(max_passes):
        if not remaining:
            break
        ready = sorted(
            resource_id
            for resource_id in remaining
            if not any(blocker in remaining for blocker in blockers.get(resource_id, ()))
        )
        if not ready:
            break
        waves.append(ready)
        for resource_id in ready:
            del remaining[resource_id]

    if remaining:
        cycle = find_cycle(remaining, blockers)
        logger.warning(
            "plan.cycle_detected",
            direction=direction,
            max_passes=max_passes,
            pending=sorted(remaining),
            cycle=cycle,
        )
        raise DependencyCycleError(direction, remaining, cycle)
    return waves


def plan_create_update_waves(target_resources: Mapping[str, Any], diff: MapDiff) -> list[list[str]]:
    """Order added and changed resources, plus everything consuming their outputs."""
    forward = build_forward_index(target_resources)
    consumers = build_reverse_index(target_resources, consumed_only=True)
    pending = expand_dependents([*diff.added, *diff.changed], consumers)
    waves = extract_waves(pending, forward, CREATE_UPDATE)
    logger.debug("plan.resource_waves", direction=CREATE_UPDATE, resources=len(pending), waves=len(waves))
    return waves


def plan_delete_waves(state_resources: Mapping[str, Any], diff: MapDiff) -> list[list[str]]:
    """Order removed resources so that dependents are destroyed first."""
    dependents = build_reverse_index(state_resources)
    waves = extract_waves(diff.removed, dependents, DELETE)
    logger.debug("plan.resource_waves", direction=DELETE, resources=len(diff.removed), waves=len(waves))
    return waves


__all__ = [
    "expand_dependents",
    "find_cycle",
    "extract_waves",
    "plan_create_update_waves",
    "plan_delete_waves",
]
