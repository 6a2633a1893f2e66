"""Domain-level dataclasses for planning deployments."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..persistence.models import Category, StepAction


@dataclass
class Architecture:
    """Five category maps of id -> definition; insertion order is irrelevant."""

    ids: dict[str, Any] = field(default_factory=dict)
    accounts: dict[str, Any] = field(default_factory=dict)
    services: dict[str, Any] = field(default_factory=dict)
    layers: dict[str, Any] = field(default_factory=dict)
    resources: dict[str, Any] = field(default_factory=dict)

    def category(self, category: Category) -> dict[str, Any]:
        return getattr(self, category.value)


@dataclass(frozen=True)
class MapDiff:
    added: list[str]
    removed: list[str]
    changed: list[str]


@dataclass(frozen=True)
class SetDiff:
    added: list[str]
    removed: list[str]


@dataclass(frozen=True)
class ArchitectureDiff:
    ids: SetDiff
    accounts: SetDiff
    services: MapDiff
    layers: MapDiff
    resources: MapDiff


@dataclass
class Step:
    step_id: str
    category: Category
    action: StepAction
    target_id: str
    data: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "category": self.category.value,
            "action": self.action.value,
            "id": self.target_id,
            "data": self.data,
        }


__all__ = ["Architecture", "MapDiff", "SetDiff", "ArchitectureDiff", "Step"]
