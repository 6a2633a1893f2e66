"""Deployment orchestration: accepting requests and computing plans."""
from __future__ import annotations

import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from opentelemetry import metrics, trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..persistence.models import App, AuditLog, DeploymentStatus, EntityState, Plan, PlanStep
from ..persistence.storage import ArtifactStorage
from .architecture import load_architecture, load_artifacts
from .errors import ConflictError, DeployerError, NotFoundError, PlanningError
from .executor import WorkflowClient
from .plan_assembler import StepIdSequence, Wave, assemble_plan
from .types import Architecture

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)
steps_planned = metrics.get_meter(__name__).create_counter(
    "deployer.steps_planned", unit="1", description="Steps scheduled by computed plans"
)


@dataclass
class DeploymentCreateParams:
    app_id: str
    plan_id: str
    architecture: dict[str, Any] | None
    artifacts: list[dict[str, Any]] | None = None
    master_actions: Any = None
    principal: str = "system"
    correlation_id: str = "system"


def step_to_dict(step: PlanStep) -> dict[str, Any]:
    return {
        "stepId": step.step_id,
        "category": step.category.value,
        "action": step.action.value,
        "id": step.target_id,
        "data": step.data,
    }


class DeploymentOrchestrator:
    def __init__(self, session: AsyncSession, workflow: WorkflowClient | None = None) -> None:
        self._session = session
        self._storage = ArtifactStorage()
        self._workflow = workflow or WorkflowClient()
        self._settings = get_settings()

    async def create_deployment(self, params: DeploymentCreateParams) -> Plan:
        load_architecture(params.architecture, "target architecture")
        load_artifacts(params.artifacts)

        app = await self._session.get(App, params.app_id)
        if app is not None:
            existing = await self._session.execute(
                select(Plan.id).where(Plan.app_id == app.id, Plan.plan_id == params.plan_id)
            )
            if existing.first() is not None:
                raise ConflictError(f"Plan {params.plan_id} already exists for app {params.app_id}")

        request_ref = await self._storage.put_json(
            {
                "appId": params.app_id,
                "deploymentId": params.plan_id,
                "architecture": params.architecture,
                "artifacts": params.artifacts,
                "masterActions": params.master_actions,
            }
        )
        now = datetime.utcnow()

        if app is None:
            app = App(
                id=params.app_id,
                short_id=await self._generate_short_id(),
                status=DeploymentStatus.deploying,
                deployed=None,
                deploying=[params.plan_id],
                deployed_at=now,
            )
            self._session.add(app)
        else:
            app.status = DeploymentStatus.deploying
            app.deployed_at = now
            if params.plan_id not in (app.deploying or []):
                app.deploying = [*(app.deploying or []), params.plan_id]

        plan = Plan(
            app_id=params.app_id,
            plan_id=params.plan_id,
            status=DeploymentStatus.deploying,
            error=None,
            request_ref=request_ref,
            waves=None,
            deployed_at=now,
        )
        self._session.add(plan)
        self._session.add(
            AuditLog(
                principal=params.principal,
                action="deployment.requested",
                new_val={"appId": params.app_id, "planId": params.plan_id, "requestRef": request_ref},
                correlation_id=params.correlation_id,
            )
        )
        await self._session.flush()

        await self._workflow.start(app.id, app.short_id, plan.plan_id)
        logger.info("deployment.requested", app_id=params.app_id, plan_id=params.plan_id)
        return plan

    async def rerun(self, app_id: str, plan_id: str, principal: str = "system", correlation_id: str = "system") -> Plan:
        plan = await self._get_plan(app_id, plan_id)
        request = await self._storage.get_json(plan.request_ref)
        return await self.create_deployment(
            DeploymentCreateParams(
                app_id=app_id,
                plan_id=str(uuid.uuid4()),
                architecture=request.get("architecture"),
                artifacts=request.get("artifacts"),
                master_actions=request.get("masterActions"),
                principal=principal,
                correlation_id=correlation_id,
            )
        )

    async def compute_steps(self, app_id: str, plan_id: str) -> list[list[dict[str, Any]]]:
        """Compute and persist the waves of a plan, or return the stored ones.

        Nothing is written unless the whole wave sequence was computed. The
        plan row is locked while computing; when a concurrent call stored the
        steps first, its waves are returned instead.
        """
        plan = await self._get_plan(app_id, plan_id, for_update=True)
        if plan.waves is not None:
            logger.info("plan.already_computed", app_id=app_id, plan_id=plan_id)
            return await self.load_waves(plan)

        request = await self._storage.get_json(plan.request_ref)
        target = load_architecture(request.get("architecture"), "target architecture")
        state = await self.load_state(app_id)

        with tracer.start_as_current_span("deployer.compute_plan") as span:
            span.set_attribute("deployer.app_id", app_id)
            span.set_attribute("deployer.plan_id", plan_id)
            start = time.perf_counter()
            try:
                waves = assemble_plan(
                    state,
                    target,
                    StepIdSequence(self._settings.planning.step_id_prefix),
                    self._settings.planning.module_separator,
                )
            except PlanningError as exc:
                span.record_exception(exc)
                logger.warning("plan.failed", app_id=app_id, plan_id=plan_id, error=str(exc))
                raise
            wall_time_ms = int((time.perf_counter() - start) * 1000)
            step_count = sum(len(wave) for wave in waves)
            span.set_attribute("deployer.waves", len(waves))
            span.set_attribute("deployer.steps", step_count)

        self._persist_waves(plan, waves)
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            logger.info("plan.computed_concurrently", app_id=app_id, plan_id=plan_id)
            return await self.load_waves(await self._get_plan(app_id, plan_id))

        steps_planned.add(step_count, {"app_id": app_id})
        logger.info(
            "plan.computed", app_id=app_id, plan_id=plan_id, waves=len(waves), steps=step_count, wall_time_ms=wall_time_ms
        )
        return [[step.to_dict() for step in wave] for wave in waves]

    async def load_state(self, app_id: str) -> Architecture:
        """Current architecture made of the last deployed definition of each entity."""
        result = await self._session.execute(select(EntityState).where(EntityState.app_id == app_id))
        state = Architecture()
        for record in result.scalars():
            if record.deployed is not None:
                state.category(record.category)[record.entity_id] = record.deployed
        return state

    async def load_steps(self, plan: Plan) -> list[PlanStep]:
        result = await self._session.execute(
            select(PlanStep).where(PlanStep.plan_ref == plan.id).order_by(PlanStep.sequence)
        )
        return list(result.scalars())

    async def load_waves(self, plan: Plan) -> list[list[dict[str, Any]]]:
        steps = {step.step_id: step for step in await self.load_steps(plan)}
        return [[step_to_dict(steps[step_id]) for step_id in wave] for wave in plan.waves or []]

    def _persist_waves(self, plan: Plan, waves: list[Wave]) -> None:
        sequence = 0
        for wave_index, wave in enumerate(waves):
            for step in wave:
                self._session.add(
                    PlanStep(
                        plan_ref=plan.id,
                        step_id=step.step_id,
                        sequence=sequence,
                        wave_index=wave_index,
                        category=step.category,
                        action=step.action,
                        target_id=step.target_id,
                        data=step.data,
                    )
                )
                sequence += 1
        plan.waves = [[step.step_id for step in wave] for wave in waves]

    async def _get_plan(self, app_id: str, plan_id: str, for_update: bool = False) -> Plan:
        query = select(Plan).where(Plan.app_id == app_id, Plan.plan_id == plan_id)
        if for_update:
            query = query.with_for_update()
        plan = (await self._session.execute(query)).scalar_one_or_none()
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found for app {app_id}")
        return plan

    async def load_request(self, app_id: str, plan_id: str) -> dict[str, Any]:
        """Archived deployment request of a plan, with its artifacts validated."""
        plan = await self._get_plan(app_id, plan_id)
        request = await self._storage.get_json(plan.request_ref)
        load_artifacts(request.get("artifacts"))
        return request

    async def _generate_short_id(self) -> str:
        planning = self._settings.planning
        for _ in range(planning.short_id_attempts):
            candidate = "".join(secrets.choice(planning.short_id_alphabet) for _ in range(planning.short_id_length))
            taken = await self._session.execute(select(App.id).where(App.short_id == candidate))
            if taken.first() is None:
                return candidate
        raise DeployerError("Unable to allocate an app short id")


__all__ = ["DeploymentOrchestrator", "DeploymentCreateParams", "step_to_dict"]
