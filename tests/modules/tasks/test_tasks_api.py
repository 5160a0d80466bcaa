# tests/modules/tasks/test_tasks_api.py
import pytest
import pytest_asyncio

from opsconsole.modules.tasks import routers as task_routers
from opsconsole.modules.tasks.repository import TaskLogRepository, TaskRepository, TaskRunRepository
from opsconsole.modules.tasks.services import TaskService, get_task_service

pytestmark = pytest.mark.asyncio

API = "/api/v1/tasks"


@pytest.fixture
def task_service(db_client, dispatcher) -> TaskService:
    return TaskService(
        TaskRepository(db_client), TaskRunRepository(db_client), TaskLogRepository(db_client), dispatcher=dispatcher
    )


@pytest_asyncio.fixture
async def client(app, authenticated_client, task_service):
    app.dependency_overrides[get_task_service] = lambda: task_service
    return authenticated_client


async def test_create_task_returns_201_with_tracking_message(client, dispatcher):
    response = await client.post(API, json={"title": "Nairobi revenue", "schedule_type": "immediate"})

    assert response.status_code == 201
    body = response.json()
    task_id = body["task"]["id"]
    assert body["message"] == f"Task 'Nairobi revenue' created. Track it at /tasks/{task_id}"
    assert body["task"]["created_from"] == "api"
    assert body["task"]["status"] == "queued"
    assert dispatcher.calls == [(task_id, None)]


async def test_create_task_with_past_run_at_is_rejected(client):
    response = await client.post(
        API, json={"title": "Too late", "schedule_type": "one_time", "run_at": "2020-01-01T08:00:00"}
    )

    assert response.status_code == 422
    assert "run_at" in response.json()["errors"]


async def test_create_task_requires_authentication(test_client):
    response = await test_client.post(API, json={"title": "Anon", "schedule_type": "immediate"})
    assert response.status_code == 401


async def test_list_tasks_filters_by_status_and_type(client, task_service, test_user):
    user_id = str(test_user.id)
    await task_service.create_from_tool_call({"title": "Now"}, user_id)
    await task_service.create_from_tool_call(
        {"title": "Hourly", "schedule_type": "recurring", "cron_expression": "0 * * * *"}, user_id
    )

    everything = (await client.get(API)).json()
    assert everything["total"] == 2
    assert everything["page"] == 1

    recurring = (await client.get(API, params={"type": "recurring"})).json()
    assert [item["title"] for item in recurring["items"]] == ["Hourly"]

    queued = (await client.get(API, params={"status": "queued"})).json()
    assert [item["title"] for item in queued["items"]] == ["Now"]


async def test_show_task_of_another_user_is_forbidden(client, task_service, other_user):
    task = await task_service.create_from_tool_call({"title": "Private"}, str(other_user.id))

    assert (await client.get(f"{API}/{task.id}")).status_code == 403
    assert (await client.get(f"{API}/{task.id}/logs")).status_code == 404
    assert (await client.get(f"{API}/missing-id")).status_code == 404


async def test_show_task_includes_runs_with_logs(client, task_service, test_user):
    task = await task_service.create_from_tool_call({"title": "Audit"}, str(test_user.id))
    run = await task_service.start_run(task)
    await task_service.log_step(task, run, {"step": 1, "status": "completed", "observation": "OBSERVATION: ok"})

    body = (await client.get(f"{API}/{task.id}")).json()

    assert body["status"] == "running"
    assert body["latest_run"]["id"] == run.id
    assert body["runs"][0]["logs"][0]["observation"] == "OBSERVATION: ok"

    logs = (await client.get(f"{API}/{task.id}/logs")).json()
    assert [entry["step"] for entry in logs] == [1]


async def test_cancel_and_retry(client, task_service, test_user, dispatcher):
    task = await task_service.create_from_tool_call({"title": "Flaky"}, str(test_user.id))

    cancelled = await client.post(f"{API}/{task.id}/cancel")
    assert cancelled.json()["status"] == "cancelled"

    retried = await client.post(f"{API}/{task.id}/retry")
    assert retried.json()["status"] == "queued"
    assert [call[0] for call in dispatcher.calls] == [task.id, task.id]


async def test_stream_emits_new_logs_then_done(client, task_service, test_user, monkeypatch):
    monkeypatch.setattr(task_routers, "STREAM_POLL_INTERVAL", 0)
    task = await task_service.create_from_tool_call({"title": "Streamed"}, str(test_user.id))
    run = await task_service.start_run(task)
    await task_service.log_step(task, run, {"step": 1, "status": "completed"})
    await task_service.complete_run(task, run, {}, "Done.")

    response = await client.get(f"{API}/{task.id}/stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [line for line in response.text.splitlines() if line.startswith("data: ")]
    assert '"step": 1' in events[0]
    assert events[-1] == 'data: {"type": "done", "status": "completed"}'
