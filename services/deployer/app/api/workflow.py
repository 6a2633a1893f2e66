"""Workflow endpoints called by the executor while it runs a plan."""
from __future__ import annotations

import enum
from typing import Any, Awaitable, Callable, Dict, List

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from ..auth.oidc import require_roles
from ..config import get_settings
from ..domain.architecture import parse_categories, parse_category
from ..domain.errors import UnknownCategoryError
from ..domain.planner_service import DeploymentOrchestrator
from ..domain.tracker import ExecutionStateTracker
from ..persistence.models import DeploymentStatus, StepAction, StepStatus
from .apps import entity_to_dict
from .deps import get_orchestrator, get_tracker

router = APIRouter(
    prefix="/workflow",
    tags=["workflow"],
    dependencies=[Depends(require_roles(get_settings().security.workflow_role))],
)


class WorkflowFunction(str, enum.Enum):
    handle_request = "handleRequest"
    compute_deployment_steps = "computeDeploymentSteps"
    set_step_status = "setStepStatus"
    update_state = "updateState"
    update_status = "updateStatus"
    get_app_outputs = "getAppOutputs"
    create_resource_short_id = "createResourceShortId"
    delete_resource_short_id = "deleteResourceShortId"


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ComputeStepsPayload(_Payload):
    app_id: str = Field(alias="appId")
    plan_id: str = Field(alias="planId")


class StepStatusPayload(_Payload):
    app_id: str = Field(alias="appId")
    plan_id: str = Field(alias="planId")
    step_id: str = Field(alias="stepId")
    progress: str = Field(description="Progress marker stamped with the report time, e.g. started or finished")
    status: StepStatus


class StateUpdatePayload(_Payload):
    app_id: str = Field(alias="appId")
    category: str = Field(validation_alias="type")
    id: str
    action: StepAction
    status: DeploymentStatus
    deployed: Any = None
    output: Any = None
    error: Any = None
    deploying: Any = None


class PlanStatusPayload(_Payload):
    app_id: str = Field(alias="appId")
    plan_id: str = Field(alias="planId")
    status: DeploymentStatus
    error: Any = None


class OutputsPayload(_Payload):
    app_id: str = Field(alias="appId")
    categories: List[str] | None = Field(default=None, validation_alias="types")
    ids: List[str] | None = Field(default=None, validation_alias="resourceIds")


class RequestPayload(_Payload):
    app_id: str = Field(alias="appId")
    plan_id: str = Field(alias="planId")


class ResourceShortIdPayload(_Payload):
    app_id: str = Field(alias="appId")
    app_short_id: str | None = Field(default=None, alias="appShortId")


class WorkflowContext:
    def __init__(self, orchestrator: DeploymentOrchestrator, tracker: ExecutionStateTracker) -> None:
        self.orchestrator = orchestrator
        self.tracker = tracker


async def _handle_request(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    payload = RequestPayload.model_validate(body)
    request = await ctx.orchestrator.load_request(payload.app_id, payload.plan_id)
    return {"masterActions": request.get("masterActions")}


async def _compute_deployment_steps(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    payload = ComputeStepsPayload.model_validate(body)
    return await ctx.orchestrator.compute_steps(payload.app_id, payload.plan_id)


async def _set_step_status(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    payload = StepStatusPayload.model_validate(body)
    step = await ctx.tracker.record_step_progress(
        payload.app_id, payload.plan_id, payload.step_id, payload.progress, payload.status
    )
    return {"stepId": step.step_id, "status": step.status.value, "progress": step.progress}


async def _update_state(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    payload = StateUpdatePayload.model_validate(body)
    category = parse_category(payload.category)
    # Only the fields actually sent take part in the update
    report = payload.model_dump(exclude_unset=True, exclude={"app_id"})
    report.update(category=category, id=payload.id, action=payload.action, status=payload.status)
    record = await ctx.tracker.apply_entity_report(payload.app_id, report)
    if record is None:
        return {"id": payload.id, "category": category.value, "deleted": True}
    return entity_to_dict(record)


async def _update_status(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    payload = PlanStatusPayload.model_validate(body)
    plan = await ctx.tracker.update_plan_status(payload.app_id, payload.plan_id, payload.status, payload.error)
    return {"planId": plan.plan_id, "status": plan.status.value}


async def _get_app_outputs(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    payload = OutputsPayload.model_validate(body)
    return await ctx.tracker.get_outputs(payload.app_id, parse_categories(payload.categories), payload.ids)


async def _create_resource_short_id(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    payload = ResourceShortIdPayload.model_validate(body)
    return {"shortId": await ctx.tracker.allocate_resource_short_id(payload.app_id, payload.app_short_id)}


async def _delete_resource_short_id(ctx: WorkflowContext, body: dict[str, Any]) -> Any:
    # Short ids are never reused, so releasing one changes nothing
    ResourceShortIdPayload.model_validate(body)
    return {}


WorkflowHandler = Callable[[WorkflowContext, Dict[str, Any]], Awaitable[Any]]

HANDLERS: dict[WorkflowFunction, WorkflowHandler] = {
    WorkflowFunction.handle_request: _handle_request,
    WorkflowFunction.compute_deployment_steps: _compute_deployment_steps,
    WorkflowFunction.set_step_status: _set_step_status,
    WorkflowFunction.update_state: _update_state,
    WorkflowFunction.update_status: _update_status,
    WorkflowFunction.get_app_outputs: _get_app_outputs,
    WorkflowFunction.create_resource_short_id: _create_resource_short_id,
    WorkflowFunction.delete_resource_short_id: _delete_resource_short_id,
}

_missing = set(WorkflowFunction) - set(HANDLERS)
if _missing:  # pragma: no cover - guarded at import
    raise RuntimeError(f"Workflow functions without handler: {sorted(f.value for f in _missing)}")


def resolve_function(name: str) -> WorkflowHandler:
    try:
        return HANDLERS[WorkflowFunction(name)]
    except ValueError as exc:
        raise UnknownCategoryError(f"Workflow function {name} not found") from exc


@router.post("/{function_name}", status_code=status.HTTP_201_CREATED)
async def call_function(
    function_name: str,
    body: dict[str, Any],
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    tracker: ExecutionStateTracker = Depends(get_tracker),
):
    handler = resolve_function(function_name)
    return await handler(WorkflowContext(orchestrator, tracker), body)


__all__ = ["router", "WorkflowFunction", "HANDLERS", "resolve_function"]
