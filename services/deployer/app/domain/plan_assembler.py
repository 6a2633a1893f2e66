"""Assemble the ordered deployment plan across all entity categories."""
from __future__ import annotations

from typing import Any, Callable, Iterable, List

from ..persistence.models import Category, StepAction
from .diff import compute_diffs
from .types import Architecture, Step
from .waves import plan_create_update_waves, plan_delete_waves

Wave = List[Step]


class StepIdSequence:
    """Monotonic step identifiers scoped to a single planning run."""

    def __init__(self, prefix: str = "step_") -> None:
        self._prefix = prefix
        self._next = 0

    def __call__(self) -> str:
        step_id = f"{self._prefix}{self._next}"
        self._next += 1
        return step_id


class _PlanBuilder:
    def __init__(self, step_ids: StepIdSequence) -> None:
        self._step_ids = step_ids
        self.waves: list[Wave] = []

    def step(self, category: Category, action: StepAction, target_id: str, data: dict[str, Any] | None) -> Step:
        return Step(step_id=self._step_ids(), category=category, action=action, target_id=target_id, data=data)

    def parallel(self, ids: Iterable[str], make_step: Callable[[str], Step]) -> None:
        wave = [make_step(target_id) for target_id in ids]
        if wave:
            self.waves.append(wave)

    def sequential(self, ids: Iterable[str], make_step: Callable[[str], Step]) -> None:
        for target_id in ids:
            self.waves.append([make_step(target_id)])


def _account_data(architecture: Architecture, account_id: str) -> dict[str, Any]:
    resource = architecture.resources.get(account_id)
    service = resource.get("service") if isinstance(resource, dict) else None
    return {"service": service}


def assemble_plan(
    state: Architecture,
    target: Architecture,
    step_ids: StepIdSequence | None = None,
    separator: str = "/",
) -> list[Wave]:
    """Build the full ordered list of waves moving ``state`` to ``target``.

    Order: services and layers created or updated, ids and accounts created
    one per wave, resource creation/update waves, resource deletion waves,
    then accounts, ids, layers and services removed.
    """
    diffs = compute_diffs(state, target, separator)
    # Both resource directions are computed before any step id is handed out
    resource_deploy_waves = plan_create_update_waves(target.resources, diffs.resources)
    resource_destroy_waves = plan_delete_waves(state.resources, diffs.resources)

    builder = _PlanBuilder(step_ids or StepIdSequence())

    def upsert(category: Category, added: set[str]) -> Callable[[str], Step]:
        definitions = target.category(category)
        return lambda target_id: builder.step(
            category,
            StepAction.create if target_id in added else StepAction.update,
            target_id,
            definitions[target_id],
        )

    def delete(category: Category) -> Callable[[str], Step]:
        definitions = state.category(category)
        return lambda target_id: builder.step(category, StepAction.delete, target_id, definitions[target_id])

    added_services = set(diffs.services.added)
    added_layers = set(diffs.layers.added)
    added_resources = set(diffs.resources.added)

    builder.parallel([*diffs.services.added, *diffs.services.changed], upsert(Category.services, added_services))
    builder.parallel([*diffs.layers.added, *diffs.layers.changed], upsert(Category.layers, added_layers))
    builder.sequential(diffs.ids.added, lambda target_id: builder.step(Category.ids, StepAction.create, target_id, {}))
    builder.sequential(
        diffs.accounts.added,
        lambda target_id: builder.step(
            Category.accounts, StepAction.create, target_id, _account_data(target, target_id)
        ),
    )
    for wave in resource_deploy_waves:
        builder.parallel(wave, upsert(Category.resources, added_resources))
    for wave in resource_destroy_waves:
        builder.parallel(wave, delete(Category.resources))
    builder.parallel(
        diffs.accounts.removed,
        lambda target_id: builder.step(
            Category.accounts, StepAction.delete, target_id, _account_data(state, target_id)
        ),
    )
    builder.parallel(diffs.ids.removed, lambda target_id: builder.step(Category.ids, StepAction.delete, target_id, {}))
    builder.parallel(diffs.layers.removed, delete(Category.layers))
    builder.parallel(diffs.services.removed, delete(Category.services))
    return builder.waves


__all__ = ["StepIdSequence", "Wave", "assemble_plan"]
