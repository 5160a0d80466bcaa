# tests/modules/tasks/test_task_service.py
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from opsconsole.core.clock import utcnow
from opsconsole.modules.tasks.executor import PLAN_FAILED_MESSAGE, TaskExecutor
from opsconsole.modules.tasks.models import TaskInDB
from opsconsole.modules.tasks.repository import TaskLogRepository, TaskRepository, TaskRunRepository
from opsconsole.modules.tasks.services import (
    TaskService,
    TaskValidationError,
    adjust_run_at_for_relative_intent,
    parse_run_at,
)

pytestmark = pytest.mark.asyncio

NAIROBI = "Africa/Nairobi"


@pytest.fixture
def task_service(db_client, dispatcher) -> TaskService:
    return TaskService(
        TaskRepository(db_client), TaskRunRepository(db_client), TaskLogRepository(db_client), dispatcher=dispatcher
    )


class FakeRunner:
    def __init__(self, results):
        self.results = results
        self.calls = []

    async def call_tool(self, name, args):
        self.calls.append((name, args))
        return self.results[name]


async def test_immediate_task_is_dispatched_and_queued(task_service, dispatcher):
    task = await task_service.create_from_tool_call({"title": "Send weekly report"}, user_id="u1")

    assert task.status == "queued"
    assert task.created_from == "chat"
    assert dispatcher.calls == [(task.id, None)]


async def test_one_time_task_dispatches_with_eta(task_service, dispatcher):
    run_at = (datetime.now(ZoneInfo(NAIROBI)) + timedelta(days=2)).replace(microsecond=0)

    task = await task_service.create_from_tool_call(
        {"title": "Remind ops", "schedule_type": "one_time", "run_at": run_at.isoformat(), "timezone": NAIROBI},
        user_id="u1",
    )

    expected = run_at.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)
    assert task.status == "queued"
    assert task.run_at == expected
    assert task.next_run_at == expected
    assert dispatcher.calls == [(task.id, expected)]


async def test_one_time_task_requires_future_run_at(task_service, dispatcher):
    with pytest.raises(TaskValidationError) as missing:
        await task_service.create_from_tool_call({"title": "Later", "schedule_type": "one_time"}, user_id="u1")
    assert "run_at" in missing.value.errors

    with pytest.raises(TaskValidationError) as past:
        await task_service.create_from_tool_call(
            {"title": "Later", "schedule_type": "one_time", "run_at": "2020-01-01T09:00:00"}, user_id="u1"
        )
    assert past.value.errors["run_at"] == "run_at must be in the future for one-time tasks."
    assert dispatcher.calls == []


async def test_recurring_task_waits_for_scheduler(task_service, dispatcher):
    task = await task_service.create_from_tool_call(
        {"title": "Daily digest", "schedule_type": "recurring", "cron_expression": "0 8 * * *", "timezone": NAIROBI},
        user_id="u1",
    )

    assert task.status == "pending"
    assert task.next_run_at is not None and task.next_run_at > utcnow()
    assert dispatcher.calls == []


async def test_recurring_task_rejects_invalid_cron(task_service):
    with pytest.raises(TaskValidationError) as exc:
        await task_service.create_from_tool_call(
            {"title": "Broken", "schedule_type": "recurring", "cron_expression": "every day"}, user_id="u1"
        )
    assert "cron_expression" in exc.value.errors


async def test_unknown_timezone_falls_back(task_service):
    task = await task_service.create_from_tool_call({"title": "Anywhere", "timezone": "Mars/Olympus"}, user_id="u1")
    assert task.timezone != "Mars/Olympus"


async def test_parse_run_at_handles_naive_and_zulu_values():
    naive = parse_run_at("2026-05-01T10:00:00", NAIROBI)
    assert naive.utcoffset() == timedelta(hours=3)

    zulu = parse_run_at("2026-05-01T10:00:00Z", NAIROBI)
    assert zulu.utcoffset() == timedelta(0)

    assert parse_run_at("not a date", NAIROBI) is None
    assert parse_run_at(None, NAIROBI) is None


async def test_relative_intent_moves_stale_time_to_next_occurrence():
    zone = ZoneInfo(NAIROBI)
    now = datetime(2026, 10, 19, 15, 0, tzinfo=zone)
    stale = datetime(2024, 10, 19, 9, 30, tzinfo=zone)

    adjusted = adjust_run_at_for_relative_intent(stale, "one_time", NAIROBI, "remind me today at 9:30", now=now)

    assert adjusted == datetime(2026, 10, 20, 9, 30, tzinfo=zone)


async def test_relative_intent_ignores_other_schedules_and_plain_requests():
    zone = ZoneInfo(NAIROBI)
    now = datetime(2026, 10, 19, 15, 0, tzinfo=zone)
    stale = datetime(2024, 10, 19, 9, 30, tzinfo=zone)

    assert adjust_run_at_for_relative_intent(stale, "recurring", NAIROBI, "today", now=now) == stale
    assert adjust_run_at_for_relative_intent(stale, "one_time", NAIROBI, "on the 19th", now=now) == stale


async def test_complete_run_reschedules_recurring_task(task_service, db_client):
    task = await task_service.create_from_tool_call(
        {"title": "Daily digest", "schedule_type": "recurring", "cron_expression": "*/5 * * * *"}, user_id="u1"
    )
    run = await task_service.start_run(task)
    running = await task_service.task_repo.get_by_id(task.id)
    assert running.status == "running"
    assert running.next_run_at is None

    await task_service.complete_run(running, run, {"1": {"type": "note"}}, "Done.")

    stored_run = await task_service.run_repo.get_by_id(run.id)
    rescheduled = await task_service.task_repo.get_by_id(task.id)
    assert stored_run.status == "completed"
    assert stored_run.summary == "Done."
    assert rescheduled.status == "pending"
    assert rescheduled.next_run_at is not None


async def test_fail_run_marks_task_and_run_failed(task_service):
    task = await task_service.create_from_tool_call({"title": "One shot"}, user_id="u1")
    run = await task_service.start_run(task)

    await task_service.fail_run(task, run, "boom")

    assert (await task_service.run_repo.get_by_id(run.id)).error == "boom"
    assert (await task_service.task_repo.get_by_id(task.id)).status == "failed"


async def test_promote_due_claims_each_task_once(task_service, dispatcher):
    due = await task_service.task_repo.create(
        TaskInDB(user_id="u1", title="Due", schedule_type="recurring", next_run_at=utcnow() - timedelta(minutes=1))
    )
    await task_service.task_repo.create(
        TaskInDB(user_id="u1", title="Later", schedule_type="recurring", next_run_at=utcnow() + timedelta(hours=1))
    )

    assert await task_service.promote_due() == 1
    assert await task_service.promote_due() == 0
    assert dispatcher.calls == [(due.id, None)]
    assert (await task_service.task_repo.get_by_id(due.id)).status == "queued"


async def test_list_for_user_scheduled_filter(task_service):
    await task_service.create_from_tool_call({"title": "Now"}, user_id="u1")
    await task_service.create_from_tool_call(
        {"title": "Cron", "schedule_type": "recurring", "cron_expression": "0 * * * *"}, user_id="u1"
    )
    await task_service.create_from_tool_call({"title": "Not mine"}, user_id="u2")

    listing = await task_service.list_for_user("u1", status="scheduled")

    assert listing["total"] == 2
    assert {item["title"] for item in listing["items"]} == {"Now", "Cron"}
    assert listing["items"][0]["latest_run"] is None


async def test_executor_runs_plan_and_logs_each_step(task_service):
    task = await task_service.create_from_tool_call(
        {
            "title": "Revenue check",
            "expected_output": "Revenue summary sent.",
            "execution_plan": [
                {"step": 1, "action": "Build report", "tool": "financial_report", "tool_input": {"merchant": "kitchen"}},
                {"step": 2, "action": "Review numbers"},
            ],
        },
        user_id="u1",
    )
    runner = FakeRunner({"financial_report": {"type": "financial_report", "total_orders": 2}})

    outcome = await TaskExecutor(task_service, lambda user_id: runner).run(task.id)

    assert outcome["status"] == "completed"
    assert runner.calls == [("financial_report", {"merchant": "kitchen"})]
    logs = await task_service.logs(task)
    assert [entry.status for entry in logs] == ["running", "completed", "running", "completed"]
    run = await task_service.run_repo.get_by_id(outcome["run_id"])
    assert run.summary == "Revenue summary sent."
    assert run.output["2"]["type"] == "note"
    assert (await task_service.task_repo.get_by_id(task.id)).status == "completed"


async def test_executor_fails_run_when_policy_blocks_a_step(task_service):
    task = await task_service.create_from_tool_call(
        {"title": "Mass send", "execution_plan": [{"step": 1, "tool": "send_whatsapp", "tool_input": {}}]},
        user_id="u1",
    )
    runner = FakeRunner({"send_whatsapp": {"type": "policy_blocked", "message": "Confirmation required."}})

    outcome = await TaskExecutor(task_service, lambda user_id: runner).run(task.id)

    assert outcome["status"] == "failed"
    run = await task_service.run_repo.get_by_id(outcome["run_id"])
    assert run.error == PLAN_FAILED_MESSAGE
    assert (await task_service.task_repo.get_by_id(task.id)).status == "failed"


async def test_executor_skips_cancelled_task(task_service):
    task = await task_service.create_from_tool_call({"title": "Stop me"}, user_id="u1")
    await task_service.cancel(task)

    outcome = await TaskExecutor(task_service, lambda user_id: FakeRunner({})).run(task.id)

    assert outcome == {"status": "skipped"}


class BrokenRunner:
    async def call_tool(self, name, args):
        raise RuntimeError("tool layer down")


async def test_executor_records_unexpected_error_and_reraises(task_service):
    task = await task_service.create_from_tool_call(
        {"title": "Nightly export", "execution_plan": [{"step": 1, "tool": "financial_report", "tool_input": {}}]},
        user_id="u1",
    )

    with pytest.raises(RuntimeError, match="tool layer down"):
        await TaskExecutor(task_service, lambda user_id: BrokenRunner()).run(task.id)

    logs = await task_service.logs(task)
    assert [(entry.step, entry.status) for entry in logs if entry.step == 1] == [(1, "running")]
    error_logs = [(entry.status, entry.observation) for entry in logs if entry.step == 999]
    assert error_logs == [("failed", "OBSERVATION: tool layer down")]
    run = await task_service.run_repo.latest_for_task(task.id)
    assert run.status == "failed"
    assert run.error == "tool layer down"
    assert (await task_service.task_repo.get_by_id(task.id)).status == "failed"
