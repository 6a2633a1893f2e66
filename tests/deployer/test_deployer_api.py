import asyncio
import os
import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from services.deployer.app.api.workflow import HANDLERS, WorkflowFunction, resolve_function
from services.deployer.app.domain.errors import UnknownCategoryError
from services.deployer.app.main import app
from services.deployer.app.persistence.db import init_db, session_scope
from services.deployer.app.persistence.models import AuditLog, Plan, PlanStep

DB_FILE = "test_deployer.db"


@pytest.fixture(scope="module", autouse=True)
def clean_db_file():
    if os.path.exists(DB_FILE):
        os.remove(DB_FILE)
    yield
    if os.path.exists(DB_FILE):
        os.remove(DB_FILE)


@pytest.fixture(autouse=True)
async def setup_db():
    await init_db()


def first_architecture() -> dict:
    return {
        "services": {"web": {"image": "web:1"}},
        "resources": {
            "api/db": {"id": "api/db", "service": "web", "size": 1},
            "api/fn": {
                "id": "api/fn",
                "service": "web",
                "dependencies": {"db": {"resourceId": "api/db", "output": True}},
            },
        },
    }


def second_architecture() -> dict:
    return {
        "services": {"web": {"image": "web:1"}},
        "resources": {
            "api/db": {"id": "api/db", "service": "web", "size": 2},
            "api/cache": {"id": "api/cache"},
        },
    }


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _deploy(client: AsyncClient, app_path: str, architecture: dict) -> str:
    deployment_id = str(uuid.uuid4())
    response = await client.put(
        f"/apps/{app_path}",
        json={"deploymentId": deployment_id, "architecture": architecture, "artifacts": []},
    )
    assert response.status_code == 201, response.text
    return deployment_id


async def _compute(client: AsyncClient, app_id: str, plan_id: str):
    return await client.post("/workflow/computeDeploymentSteps", json={"appId": app_id, "planId": plan_id})


async def _execute(client: AsyncClient, app_id: str, plan_id: str, waves: list) -> None:
    """Report every step as finished, the way the executor does."""
    for wave in waves:
        for step in wave:
            for progress, status in (("started", "running"), ("finished", "succeeded")):
                response = await client.post(
                    "/workflow/setStepStatus",
                    json={
                        "appId": app_id,
                        "planId": plan_id,
                        "stepId": step["stepId"],
                        "progress": progress,
                        "status": status,
                    },
                )
                assert response.status_code == 201, response.text
            report = {
                "appId": app_id,
                "type": step["category"],
                "id": step["id"],
                "action": step["action"],
                "status": "deployed",
                "deployed": step["data"],
            }
            if step["category"] == "resources" and step["action"] != "delete":
                report["output"] = {"arn": f"arn:{step['id']}"}
            response = await client.post("/workflow/updateState", json=report)
            assert response.status_code == 201, response.text
    response = await client.post(
        "/workflow/updateStatus",
        json={"appId": app_id, "planId": plan_id, "status": "deployed"},
    )
    assert response.status_code == 201, response.text


def _shape(waves: list) -> list:
    return [[(step["category"], step["action"], step["id"]) for step in wave] for wave in waves]


@pytest.mark.asyncio
async def test_deploy_execute_and_redeploy():
    app_id = "acme/shop"
    async with _client() as client:
        plan_id = await _deploy(client, app_id, first_architecture())

        response = await _compute(client, app_id, plan_id)
        assert response.status_code == 201, response.text
        waves = response.json()
        assert _shape(waves) == [
            [("services", "create", "web")],
            [("ids", "create", "api/")],
            [("ids", "create", "api/db")],
            [("ids", "create", "api/fn")],
            [("accounts", "create", "api/")],
            [("accounts", "create", "api/db")],
            [("accounts", "create", "api/fn")],
            [("resources", "create", "api/db")],
            [("resources", "create", "api/fn")],
        ]
        assert [step["stepId"] for wave in waves for step in wave] == [f"step_{index}" for index in range(9)]
        assert waves[5][0]["data"] == {"service": "web"}

        again = await _compute(client, app_id, plan_id)
        assert again.json() == waves

        await _execute(client, app_id, plan_id, waves)

        detail = await client.get(f"/apps/{app_id}/plans/{plan_id}")
        assert detail.status_code == 200
        plan = detail.json()
        assert plan["status"] == "deployed"
        assert plan["waves"][0] == ["step_0"]
        assert plan["steps"]["step_8"]["status"] == "succeeded"
        assert set(plan["steps"]["step_8"]["progress"]) == {"started", "finished"}

        state = (await client.get(f"/apps/{app_id}")).json()
        assert state["status"] == "deployed"
        assert state["deployed"] == plan_id
        assert state["deploying"] == []
        assert state["resources"]["api/fn"]["output"] == {"arn": "arn:api/fn"}
        assert state["services"]["web"]["deployed"] == {"image": "web:1"}

        next_plan_id = await _deploy(client, app_id, second_architecture())
        assert (await client.get(f"/apps/{app_id}")).json()["deploying"] == [next_plan_id]

        waves = (await _compute(client, app_id, next_plan_id)).json()
        assert _shape(waves) == [
            [("ids", "create", "api/cache")],
            [("accounts", "create", "api/cache")],
            [("resources", "create", "api/cache"), ("resources", "update", "api/db")],
            [("resources", "delete", "api/fn")],
            [("accounts", "delete", "api/fn")],
            [("ids", "delete", "api/fn")],
        ]
        assert waves[2][1]["data"]["size"] == 2
        assert waves[3][0]["data"]["dependencies"]["db"]["resourceId"] == "api/db"

        await _execute(client, app_id, next_plan_id, waves)

        missing = await client.get(f"/apps/{app_id}/resources/api/fn")
        assert missing.status_code == 404
        assert missing.json()["error"] == "NotFoundError"

        db = await client.get(f"/apps/{app_id}/resources/api/db")
        assert db.status_code == 200
        assert db.json()["deployed"]["size"] == 2

        outputs = await client.post(
            "/workflow/getAppOutputs",
            json={"appId": app_id, "types": ["resources"], "resourceIds": ["api/db"]},
        )
        assert outputs.status_code == 201
        assert outputs.json() == {"resources": {"api/db": {"arn": "arn:api/db"}}}

        assert (await client.get(f"/apps/{app_id}")).json()["deployed"] == next_plan_id


@pytest.mark.asyncio
async def test_state_updates_keep_or_clear_fields():
    app_id = "acme/state"
    async with _client() as client:
        await _deploy(client, app_id, first_architecture())

        base = {"appId": app_id, "category": "resources", "id": "api/db", "action": "create"}
        failed = await client.post(
            "/workflow/updateState",
            json={**base, "status": "failed", "error": {"message": "quota"}, "deploying": "plan-x"},
        )
        assert failed.status_code == 201, failed.text
        assert failed.json()["error"] == {"message": "quota"}

        requested = await client.post("/workflow/getAppOutputs", json={"appId": app_id, "resourceIds": ["api/db"]})
        assert requested.json()["resources"] == {"api/db": None}
        assert set(requested.json()) == {"ids", "accounts", "services", "layers", "resources"}
        listed = await client.post("/workflow/getAppOutputs", json={"appId": app_id, "types": ["resources"]})
        assert listed.json() == {"resources": {}}

        retried = await client.post("/workflow/updateState", json={**base, "status": "deploying"})
        assert retried.json()["error"] == {"message": "quota"}
        assert retried.json()["deploying"] == "plan-x"

        cleared = await client.post(
            "/workflow/updateState",
            json={**base, "status": "deployed", "error": None, "deploying": None, "output": {"arn": "a"}},
        )
        body = cleared.json()
        assert body["status"] == "deployed"
        assert "error" not in body
        assert "deploying" not in body
        assert body["output"] == {"arn": "a"}


@pytest.mark.asyncio
async def test_rerun_creates_a_new_plan_from_the_archived_request():
    app_id = "acme/rerun"
    async with _client() as client:
        plan_id = await _deploy(client, app_id, first_architecture())

        response = await client.post(f"/apps/{app_id}/plans/{plan_id}/rerun")
        assert response.status_code == 201, response.text
        rerun = response.json()
        assert rerun["planId"] != plan_id
        assert rerun["status"] == "deploying"
        assert rerun["waves"] is None

        waves = (await _compute(client, app_id, rerun["planId"])).json()
        assert len(waves) == 9

    async with session_scope() as session:
        result = await session.execute(select(AuditLog).where(AuditLog.action == "deployment.requested"))
        requested = {entry.new_val["planId"]: entry.principal for entry in result.scalars()}
    assert requested[plan_id] == "anonymous"
    assert requested[rerun["planId"]] == "anonymous"


@pytest.mark.asyncio
async def test_cycle_fails_planning_without_persisting_steps():
    app_id = "acme/loop"
    architecture = {
        "resources": {
            "A": {"id": "A", "dependencies": {"b": {"resourceId": "B", "output": True}}},
            "B": {"id": "B", "dependencies": {"a": {"resourceId": "A", "output": True}}},
        }
    }
    async with _client() as client:
        plan_id = await _deploy(client, app_id, architecture)

        response = await _compute(client, app_id, plan_id)
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "DependencyCycleError"
        assert body["pending"] == ["A", "B"]
        assert body["cycle"] == ["A", "B", "A"]
        assert body["direction"] == "creation or update"

    async with session_scope() as session:
        plan = (await session.execute(select(Plan).where(Plan.app_id == app_id))).scalar_one()
        steps = (await session.execute(select(PlanStep).where(PlanStep.plan_ref == plan.id))).scalars().all()
    assert plan.waves is None
    assert steps == []


@pytest.mark.asyncio
async def test_request_errors_map_to_status_codes():
    async with _client() as client:
        plan_id = await _deploy(client, "acme/errors", first_architecture())

        duplicate = await client.put(
            "/apps/acme/errors",
            json={"deploymentId": plan_id, "architecture": first_architecture()},
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "ConflictError"

        malformed = await client.put(
            "/apps/acme/errors",
            json={"deploymentId": str(uuid.uuid4()), "architecture": {"resources": {"x": {"dependencies": "db"}}}},
        )
        assert malformed.status_code == 422
        assert malformed.json()["error"] == "ArchitectureValidationError"

        unknown_function = await client.post("/workflow/deleteEverything", json={"appId": "acme/errors"})
        assert unknown_function.status_code == 400
        assert unknown_function.json()["error"] == "UnknownCategoryError"

        unknown_category = await client.post(
            "/workflow/updateState",
            json={"appId": "acme/errors", "type": "queues", "id": "q", "action": "create", "status": "deployed"},
        )
        assert unknown_category.status_code == 400
        assert unknown_category.json()["error"] == "UnknownCategoryError"

        unknown_output_category = await client.post(
            "/workflow/getAppOutputs", json={"appId": "acme/errors", "types": ["resources", "queues"]}
        )
        assert unknown_output_category.status_code == 400

        unknown_architecture_category = await client.put(
            "/apps/acme/errors",
            json={"deploymentId": str(uuid.uuid4()), "architecture": {"queues": {"q1": {"id": "q1"}}}},
        )
        assert unknown_architecture_category.status_code == 400
        assert "queues" in unknown_architecture_category.json()["message"]

        unknown_artifact = await client.put(
            "/apps/acme/errors",
            json={
                "deploymentId": str(uuid.uuid4()),
                "architecture": first_architecture(),
                "artifacts": [{"type": "layer", "name": "shared"}],
            },
        )
        assert unknown_artifact.status_code == 400

        invalid_payload = await client.post("/workflow/computeDeploymentSteps", json={"appId": "acme/errors"})
        assert invalid_payload.status_code == 422
        assert invalid_payload.json()["error"] == "ValidationError"

        missing_app = await client.get("/apps/acme/nothing")
        assert missing_app.status_code == 404

        missing_plan = await _compute(client, "acme/errors", "no-such-plan")
        assert missing_plan.status_code == 404

        health = await client.get("/healthz")
        assert health.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_concurrent_computations_store_one_plan():
    app_id = "acme/retry"
    async with _client() as client:
        plan_id = await _deploy(client, app_id, first_architecture())

        first, second = await asyncio.gather(_compute(client, app_id, plan_id), _compute(client, app_id, plan_id))

        assert first.status_code == 201, first.text
        assert second.status_code == 201, second.text
        assert first.json() == second.json()
        stored = [step["stepId"] for wave in first.json() for step in wave]

    async with session_scope() as session:
        plan = (await session.execute(select(Plan).where(Plan.app_id == app_id))).scalar_one()
        steps = (await session.execute(select(PlanStep).where(PlanStep.plan_ref == plan.id))).scalars().all()
    assert sorted(step.step_id for step in steps) == sorted(stored)


@pytest.mark.asyncio
async def test_late_progress_reports_do_not_reopen_finished_steps():
    app_id = "acme/late"
    async with _client() as client:
        plan_id = await _deploy(client, app_id, first_architecture())
        await _compute(client, app_id, plan_id)

        report = {"appId": app_id, "planId": plan_id, "stepId": "step_0"}
        await client.post("/workflow/setStepStatus", json={**report, "progress": "finished", "status": "succeeded"})
        late = await client.post("/workflow/setStepStatus", json={**report, "progress": "started", "status": "running"})

        assert late.status_code == 201, late.text
        assert late.json()["status"] == "succeeded"
        assert set(late.json()["progress"]) == {"started", "finished"}


@pytest.mark.asyncio
async def test_request_and_resource_short_id_functions():
    app_id = "acme/names"
    async with _client() as client:
        plan_id = str(uuid.uuid4())
        response = await client.put(
            f"/apps/{app_id}",
            json={
                "deploymentId": plan_id,
                "architecture": first_architecture(),
                "artifacts": [{"type": "service", "name": "web", "url": "https://example.test/web.zip"}],
                "masterActions": [{"action": "migrate", "resourceId": "api/db"}],
            },
        )
        assert response.status_code == 201, response.text

        handled = await client.post("/workflow/handleRequest", json={"appId": app_id, "planId": plan_id})
        assert handled.status_code == 201, handled.text
        assert handled.json() == {"masterActions": [{"action": "migrate", "resourceId": "api/db"}]}

        first = await client.post("/workflow/createResourceShortId", json={"appId": app_id, "appShortId": "xyz"})
        second = await client.post("/workflow/createResourceShortId", json={"appId": app_id, "appShortId": "xyz"})
        assert first.json() == {"shortId": "xyz-1"}
        assert second.json() == {"shortId": "xyz-2"}

        released = await client.post("/workflow/deleteResourceShortId", json={"appId": app_id, "appShortId": "xyz"})
        assert released.status_code == 201
        assert released.json() == {}

        third = await client.post("/workflow/createResourceShortId", json={"appId": app_id})
        assert third.json()["shortId"].endswith("-3")

        missing = await client.post("/workflow/createResourceShortId", json={"appId": "acme/nobody"})
        assert missing.status_code == 404


def test_every_workflow_function_has_a_handler():
    assert set(HANDLERS) == set(WorkflowFunction)
    assert resolve_function("getAppOutputs") is HANDLERS[WorkflowFunction.get_app_outputs]
    assert resolve_function("createResourceShortId") is HANDLERS[WorkflowFunction.create_resource_short_id]
    with pytest.raises(UnknownCategoryError):
        resolve_function("computeSteps")
