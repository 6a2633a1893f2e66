"""Exceptions raised by the deployer domain."""
from __future__ import annotations

from typing import Iterable


class DeployerError(Exception):
    """Base exception for all deployer errors."""


class PlanningError(DeployerError):
    """A plan could not be computed; nothing was scheduled or persisted."""


class ArchitectureValidationError(PlanningError, ValueError):
    """The current state or target architecture is missing or malformed."""


class DependencyCycleError(PlanningError):
    """Wave extraction ran out of passes with resources still pending."""

    def __init__(self, direction: str, pending: Iterable[str], cycle: Iterable[str] = ()) -> None:
        self.direction = direction
        self.pending = sorted(pending)
        self.cycle = list(cycle)
        message = (
            f"Unable to schedule {len(self.pending)} resource(s) for {direction}: "
            f"possible dependency cycle among {self.pending}"
        )
        if self.cycle:
            message += f" (cycle: {' -> '.join(self.cycle)})"
        super().__init__(message)


class UnknownCategoryError(DeployerError, ValueError):
    """An unsupported entity category or workflow function was referenced."""


class NotFoundError(DeployerError, LookupError):
    """The referenced app, plan, step or entity does not exist."""


class ConflictError(DeployerError):
    """The request collides with an existing record, e.g. a reused deployment id."""


__all__ = [
    "DeployerError",
    "PlanningError",
    "ArchitectureValidationError",
    "DependencyCycleError",
    "UnknownCategoryError",
    "NotFoundError",
    "ConflictError",
]
