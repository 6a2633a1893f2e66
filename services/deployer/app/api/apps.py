"""Application deployment API."""
from __future__ import annotations

import uuid
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from ..auth.oidc import principal_from_claims, require_roles
from ..config import get_settings
from ..domain.errors import NotFoundError
from ..domain.planner_service import DeploymentCreateParams, DeploymentOrchestrator
from ..domain.tracker import ExecutionStateTracker
from ..persistence.models import Category, EntityState, Plan
from .deps import app_id_from_path, get_orchestrator, get_tracker

require_deployer = require_roles(get_settings().security.apps_role)

router = APIRouter(prefix="/apps", tags=["apps"], dependencies=[Depends(require_deployer)])

_APP_STATE_CATEGORIES = (Category.resources, Category.services, Category.layers)


class DeploymentRequest(BaseModel):
    deployment_id: str = Field(alias="deploymentId")
    architecture: dict[str, Any]
    artifacts: List[dict[str, Any]] | None = None
    master_actions: Any = Field(default=None, alias="masterActions")

    model_config = ConfigDict(populate_by_name=True)


class PlanSummaryResponse(BaseModel):
    app_id: str = Field(alias="appId")
    plan_id: str = Field(alias="planId")
    status: str
    error: Any = None
    deployed_at: str | None = Field(alias="deployedAt")
    waves: List[List[str]] | None = None

    model_config = ConfigDict(populate_by_name=True)


class PlanStepResponse(BaseModel):
    stepId: str
    category: str
    action: str
    id: str
    data: Any = None
    waveIndex: int
    status: str
    progress: Dict[str, Any] = Field(default_factory=dict)


class PlanDetailResponse(PlanSummaryResponse):
    steps: Dict[str, PlanStepResponse] = Field(default_factory=dict)


class AppStateResponse(BaseModel):
    appId: str
    status: str
    deployedAt: str | None = None
    deployed: str | None = None
    deploying: List[str] = Field(default_factory=list)
    resources: Dict[str, dict[str, Any]] = Field(default_factory=dict)
    services: Dict[str, dict[str, Any]] = Field(default_factory=dict)
    layers: Dict[str, dict[str, Any]] = Field(default_factory=dict)


def _plan_summary(plan: Plan) -> PlanSummaryResponse:
    return PlanSummaryResponse(
        appId=plan.app_id,
        planId=plan.plan_id,
        status=plan.status.value,
        error=plan.error,
        deployedAt=plan.deployed_at.isoformat() if plan.deployed_at else None,
        waves=plan.waves,
    )


def entity_to_dict(record: EntityState) -> dict[str, Any]:
    result: dict[str, Any] = {
        "id": record.entity_id,
        "category": record.category.value,
        "status": record.status.value if record.status else None,
        "deployed": record.deployed,
        "output": record.output,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
    }
    if record.error is not None:
        result["error"] = record.error
    if record.deploying is not None:
        result["deploying"] = record.deploying
    return result


@router.put("/{organization}/{app_name}", response_model=PlanSummaryResponse, status_code=status.HTTP_201_CREATED)
async def put_app(
    organization: str,
    app_name: str,
    request: DeploymentRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    claims: dict = Depends(require_deployer),
):
    plan = await orchestrator.create_deployment(
        DeploymentCreateParams(
            app_id=app_id_from_path(organization, app_name),
            plan_id=request.deployment_id,
            architecture=request.architecture,
            artifacts=request.artifacts,
            master_actions=request.master_actions,
            principal=principal_from_claims(claims),
            correlation_id=str(uuid.uuid4()),
        )
    )
    return _plan_summary(plan)


@router.get("/{organization}/{app_name}", response_model=AppStateResponse)
async def get_app(organization: str, app_name: str, tracker: ExecutionStateTracker = Depends(get_tracker)):
    app = await tracker.get_app(app_id_from_path(organization, app_name))
    response = AppStateResponse(
        appId=app.id,
        status=app.status.value,
        deployedAt=app.deployed_at.isoformat() if app.deployed_at else None,
        deployed=app.deployed,
        deploying=list(app.deploying or []),
    )
    for record in await tracker.list_entities(app.id, _APP_STATE_CATEGORIES):
        getattr(response, record.category.value)[record.entity_id] = entity_to_dict(record)
    return response


@router.get("/{organization}/{app_name}/resources/{resource_id:path}")
async def get_app_resource(
    organization: str,
    app_name: str,
    resource_id: str,
    tracker: ExecutionStateTracker = Depends(get_tracker),
):
    app_id = app_id_from_path(organization, app_name)
    record = await tracker.get_entity(app_id, Category.resources, resource_id)
    if record is None:
        raise NotFoundError(f"Resource {resource_id} does not exist")
    return entity_to_dict(record)


@router.get("/{organization}/{app_name}/plans/{plan_id}", response_model=PlanDetailResponse)
async def get_app_plan(
    organization: str,
    app_name: str,
    plan_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    tracker: ExecutionStateTracker = Depends(get_tracker),
):
    plan = await tracker.get_plan(app_id_from_path(organization, app_name), plan_id)
    steps = {
        step.step_id: PlanStepResponse(
            stepId=step.step_id,
            category=step.category.value,
            action=step.action.value,
            id=step.target_id,
            data=step.data,
            waveIndex=step.wave_index,
            status=step.status.value,
            progress=step.progress or {},
        )
        for step in await orchestrator.load_steps(plan)
    }
    return PlanDetailResponse(**_plan_summary(plan).model_dump(by_alias=True), steps=steps)


@router.post("/{organization}/{app_name}/plans/{plan_id}/rerun", response_model=PlanSummaryResponse, status_code=status.HTTP_201_CREATED)
async def rerun_plan(
    organization: str,
    app_name: str,
    plan_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    claims: dict = Depends(require_deployer),
):
    plan = await orchestrator.rerun(
        app_id_from_path(organization, app_name),
        plan_id,
        principal=principal_from_claims(claims),
        correlation_id=str(uuid.uuid4()),
    )
    return _plan_summary(plan)


__all__ = ["router"]
