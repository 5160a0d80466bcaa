# tests/worker/test_worker_jobs.py
import asyncio
from datetime import timedelta

import pytest

from opsconsole.core.clock import utcnow
from opsconsole.modules.tasks.models import TaskInDB
from opsconsole.modules.tasks.repository import TaskRepository, TaskRunRepository
from opsconsole.worker import tasks_runner, tasks_scheduling
from opsconsole.worker.tasks_media import decrypt_whatsapp_media
from opsconsole.worker.tasks_runner import run_task_job
from opsconsole.worker.tasks_scheduling import promote_due_tasks


class FakeMongoContext:
    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    def get_db(self):
        return self.db


@pytest.fixture
def worker_db(db_client, monkeypatch):
    monkeypatch.setattr(tasks_scheduling, "MongoDbContext", lambda: FakeMongoContext(db_client))
    monkeypatch.setattr(tasks_runner, "MongoDbContext", lambda: FakeMongoContext(db_client))
    return db_client


@pytest.fixture
def enqueued(monkeypatch):
    calls = []
    monkeypatch.setattr(run_task_job, "apply_async", lambda args, **options: calls.append((args, options)))
    return calls


def test_promote_due_tasks_job_enqueues_runs(worker_db, enqueued):
    repo = TaskRepository(worker_db)
    due = asyncio.run(repo.create(
        TaskInDB(user_id="u1", title="Hourly", schedule_type="recurring", next_run_at=utcnow() - timedelta(seconds=5))
    ))

    promoted = promote_due_tasks.apply().get()

    assert promoted == 1
    assert enqueued == [([due.id], {})]
    assert asyncio.run(repo.get_by_id(due.id)).status == "queued"


def test_run_task_job_completes_plan_without_tools(worker_db):
    repo = TaskRepository(worker_db)
    task = asyncio.run(repo.create(TaskInDB(
        user_id="u1",
        title="Checklist",
        status="queued",
        execution_plan=[{"step": 1, "action": "Review the morning dispatch list"}],
        expected_output="Checklist reviewed.",
    )))

    result = run_task_job.apply(args=[task.id], kwargs={"trace_id": "task_test"}).get()

    assert result["status"] == "completed"
    run = asyncio.run(TaskRunRepository(worker_db).get_by_id(result["run_id"]))
    assert run.summary == "Checklist reviewed."
    assert run.output == {"1": {"type": "note", "message": "Review the morning dispatch list"}}


def test_decrypt_media_job_reports_unusable_media():
    result = decrypt_whatsapp_media.apply(args=[{"mimetype": "image/jpeg"}, "image", "wamid-1"]).get()

    assert result == {"status": "failed", "error": "Media object is missing url or mediaKey."}
