"""Execution state tracking for steps, entities and applications."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..persistence.models import App, Category, DeploymentStatus, EntityState, Plan, PlanStep, StepAction, StepStatus
from .errors import NotFoundError

logger = structlog.get_logger(__name__)

# Written only when a value is supplied; null never clears them.
_VALUE_FIELDS = ("deployed", "output")
# Omitted leaves the stored value, explicit null clears it.
_CLEARABLE_FIELDS = ("error", "deploying")


_TERMINAL_STEP_STATUSES = (StepStatus.succeeded, StepStatus.failed)


def is_completed_delete(action: StepAction, status: DeploymentStatus | None) -> bool:
    return action is StepAction.delete and status is DeploymentStatus.deployed


def next_step_status(current: StepStatus | None, reported: StepStatus) -> StepStatus:
    """Step status after a report; a finished step never moves back to pending or running."""
    if current in _TERMINAL_STEP_STATUSES and reported not in _TERMINAL_STEP_STATUSES:
        return current
    return reported


def merge_entity_report(record: EntityState, report: Mapping[str, Any], now: datetime) -> EntityState:
    """Apply the supplied fields of an entity report onto ``record``.

    ``report`` must only contain the fields the executor actually sent, so
    that an omitted ``error`` can be told apart from ``error: null``.
    """
    if report.get("status") is not None:
        record.status = report["status"]
    for field in _VALUE_FIELDS:
        if report.get(field) is not None:
            setattr(record, field, report[field])
    for field in _CLEARABLE_FIELDS:
        if field in report:
            setattr(record, field, report[field])
    record.updated_at = now
    return record


def apply_plan_status(app: App, plan: Plan, status: DeploymentStatus, error: Any = None) -> None:
    """Roll a plan-level status report up onto the plan and its application."""
    plan.status = status
    plan.error = error
    app.status = status
    if status is DeploymentStatus.deployed:
        app.deployed = plan.plan_id
        app.deploying = []


class ExecutionStateTracker:
    """Record executor reports against persisted plans and entity state."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_app(self, app_id: str) -> App:
        app = await self._session.get(App, app_id)
        if app is None:
            raise NotFoundError(f"App {app_id} not found")
        return app

    async def get_plan(self, app_id: str, plan_id: str) -> Plan:
        result = await self._session.execute(select(Plan).where(Plan.app_id == app_id, Plan.plan_id == plan_id))
        plan = result.scalar_one_or_none()
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found for app {app_id}")
        return plan

    async def get_entity(self, app_id: str, category: Category, entity_id: str) -> EntityState | None:
        result = await self._session.execute(
            select(EntityState).where(
                EntityState.app_id == app_id,
                EntityState.category == category,
                EntityState.entity_id == entity_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_entities(self, app_id: str, categories: Iterable[Category]) -> list[EntityState]:
        result = await self._session.execute(
            select(EntityState)
            .where(EntityState.app_id == app_id, EntityState.category.in_(list(categories)))
            .order_by(EntityState.category, EntityState.entity_id)
        )
        return list(result.scalars())

    async def record_step_progress(
        self,
        app_id: str,
        plan_id: str,
        step_id: str,
        progress: str,
        status: StepStatus,
    ) -> PlanStep:
        plan = await self.get_plan(app_id, plan_id)
        result = await self._session.execute(
            select(PlanStep).where(PlanStep.plan_ref == plan.id, PlanStep.step_id == step_id)
        )
        step = result.scalar_one_or_none()
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in plan {plan_id}")
        step.progress = {**(step.progress or {}), progress: datetime.utcnow().isoformat()}
        new_status = next_step_status(step.status, status)
        if new_status is not status:
            logger.info("step.stale_status", app_id=app_id, plan_id=plan_id, step_id=step_id, reported=status.value)
        step.status = new_status
        logger.info("step.progress", app_id=app_id, plan_id=plan_id, step_id=step_id, progress=progress, status=new_status.value)
        return step

    async def allocate_resource_short_id(self, app_id: str, app_short_id: str | None = None) -> str:
        """Next ``<appShortId>-<n>`` name from the app's resource counter."""
        result = await self._session.execute(
            update(App)
            .where(App.id == app_id)
            .values(resource_counter=App.resource_counter + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"App {app_id} not found")
        row = (await self._session.execute(select(App.short_id, App.resource_counter).where(App.id == app_id))).one()
        short_id = f"{app_short_id or row.short_id}-{row.resource_counter}"
        logger.info("state.resource_short_id", app_id=app_id, short_id=short_id)
        return short_id

    async def apply_entity_report(self, app_id: str, report: Mapping[str, Any]) -> EntityState | None:
        """Upsert or remove an entity record from an executor report.

        Returns the stored record, or ``None`` when a completed deletion
        removed it.
        """
        await self.get_app(app_id)
        category: Category = report["category"]
        entity_id: str = report["id"]
        record = await self.get_entity(app_id, category, entity_id)

        if is_completed_delete(report["action"], report.get("status")):
            if record is not None:
                await self._session.delete(record)
            logger.info("state.entity_deleted", app_id=app_id, category=category.value, id=entity_id)
            return None

        if record is None:
            record = EntityState(app_id=app_id, category=category, entity_id=entity_id)
            self._session.add(record)
        merge_entity_report(record, report, datetime.utcnow())
        logger.info(
            "state.entity_updated",
            app_id=app_id,
            category=category.value,
            id=entity_id,
            status=record.status.value if record.status else None,
        )
        return record

    async def update_plan_status(self, app_id: str, plan_id: str, status: DeploymentStatus, error: Any = None) -> Plan:
        app = await self.get_app(app_id)
        plan = await self.get_plan(app_id, plan_id)
        apply_plan_status(app, plan, status, error)
        logger.info("plan.status", app_id=app_id, plan_id=plan_id, status=status.value)
        return plan

    async def get_outputs(
        self,
        app_id: str,
        categories: Iterable[Category] | None = None,
        ids: Iterable[str] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Outputs grouped by category.

        Without ``ids`` only records holding an output are listed; explicitly
        requested ids are listed whenever their record exists, output or not.
        """
        selected = list(categories) if categories else list(Category)
        wanted = set(ids) if ids else None
        outputs: dict[str, dict[str, Any]] = {category.value: {} for category in selected}
        for record in await self.list_entities(app_id, selected):
            if wanted is not None:
                if record.entity_id in wanted:
                    outputs[record.category.value][record.entity_id] = record.output
            elif record.output is not None:
                outputs[record.category.value][record.entity_id] = record.output
        return outputs


__all__ = [
    "ExecutionStateTracker",
    "apply_plan_status",
    "is_completed_delete",
    "merge_entity_report",
    "next_step_status",
]
