from datetime import datetime

from services.deployer.app.domain.tracker import (
    apply_plan_status,
    is_completed_delete,
    merge_entity_report,
    next_step_status,
)
from services.deployer.app.persistence.models import (
    App,
    Category,
    DeploymentStatus,
    EntityState,
    Plan,
    StepAction,
    StepStatus,
)


def _record(**fields):
    return EntityState(app_id="org/app", category=Category.resources, entity_id="api/db", **fields)


def test_omitted_fields_keep_stored_values():
    record = _record(status=DeploymentStatus.failed, output={"url": "x"}, error={"code": 1}, deploying="plan-1")
    now = datetime(2024, 1, 1)

    merge_entity_report(record, {"status": DeploymentStatus.deploying}, now)

    assert record.status is DeploymentStatus.deploying
    assert record.output == {"url": "x"}
    assert record.error == {"code": 1}
    assert record.deploying == "plan-1"
    assert record.updated_at == now


def test_explicit_null_clears_error_and_deploying():
    record = _record(error={"code": 1}, deploying="plan-1", output={"url": "x"}, deployed={"size": 1})

    merge_entity_report(
        record,
        {"status": DeploymentStatus.deployed, "error": None, "deploying": None, "output": None, "deployed": None},
        datetime(2024, 1, 1),
    )

    assert record.error is None
    assert record.deploying is None
    assert record.output == {"url": "x"}
    assert record.deployed == {"size": 1}


def test_falsy_values_are_still_written():
    record = _record(output={"url": "x"}, deployed={"size": 1})

    merge_entity_report(record, {"output": {}, "deployed": 0}, datetime(2024, 1, 1))

    assert record.output == {}
    assert record.deployed == 0


def test_only_finished_deletions_remove_records():
    assert is_completed_delete(StepAction.delete, DeploymentStatus.deployed)
    assert not is_completed_delete(StepAction.delete, DeploymentStatus.deploying)
    assert not is_completed_delete(StepAction.delete, DeploymentStatus.failed)
    assert not is_completed_delete(StepAction.update, DeploymentStatus.deployed)
    assert not is_completed_delete(StepAction.delete, None)


def test_deployed_plan_becomes_the_active_one():
    app = App(id="org/app", short_id="abc", status=DeploymentStatus.deploying, deploying=["plan-2"])
    plan = Plan(app_id="org/app", plan_id="plan-2", status=DeploymentStatus.deploying, request_ref="file://x")

    apply_plan_status(app, plan, DeploymentStatus.deployed)

    assert plan.status is DeploymentStatus.deployed
    assert app.status is DeploymentStatus.deployed
    assert app.deployed == "plan-2"
    assert app.deploying == []


def test_failed_plan_keeps_previous_deployment():
    app = App(id="org/app", short_id="abc", status=DeploymentStatus.deploying, deployed="plan-1", deploying=["plan-2"])
    plan = Plan(app_id="org/app", plan_id="plan-2", status=DeploymentStatus.deploying, request_ref="file://x")

    apply_plan_status(app, plan, DeploymentStatus.failed, {"message": "quota exceeded"})

    assert plan.error == {"message": "quota exceeded"}
    assert app.status is DeploymentStatus.failed
    assert app.deployed == "plan-1"
    assert app.deploying == ["plan-2"]


def test_finished_steps_do_not_move_backwards():
    assert next_step_status(StepStatus.pending, StepStatus.running) is StepStatus.running
    assert next_step_status(StepStatus.running, StepStatus.succeeded) is StepStatus.succeeded
    assert next_step_status(StepStatus.succeeded, StepStatus.running) is StepStatus.succeeded
    assert next_step_status(StepStatus.failed, StepStatus.pending) is StepStatus.failed
    assert next_step_status(StepStatus.failed, StepStatus.succeeded) is StepStatus.succeeded
