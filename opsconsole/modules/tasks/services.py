# opsconsole/modules/tasks/services.py

import math
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from croniter import croniter
from fastapi import Depends
from loguru import logger

from opsconsole.core.clock import resolve_timezone, to_naive_utc, utcnow
from .models import TaskInDB, TaskLogInDB, TaskRunInDB
from .repository import (
    TaskLogRepository,
    TaskRepository,
    TaskRunRepository,
    get_task_log_repository,
    get_task_repository,
    get_task_run_repository,
)

PER_PAGE = 20

RELATIVE_DAY_RE = re.compile(r"\b(today|tonight|this morning|this afternoon|this evening)\b", re.IGNORECASE)
THIS_YEAR_RE = re.compile(r"\bthis year\b", re.IGNORECASE)

Dispatcher = Callable[[str, Optional[datetime]], Any]


class TaskValidationError(ValueError):
    """Raised when a task payload fails schedule validation; ``errors`` maps field -> message."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = errors
        super().__init__(next(iter(errors.values())))


def enqueue_task_run(task_id: str, eta: Optional[datetime] = None) -> None:
    """Default dispatcher: enqueues the Celery run job, delayed until ``eta`` (naive UTC)."""
    from opsconsole.worker.tasks_runner import run_task_job

    options = {}
    if eta is not None:
        options["eta"] = eta.replace(tzinfo=ZoneInfo("UTC"))
    run_task_job.apply_async(args=[task_id], **options)


def parse_run_at(value: Any, timezone: str) -> Optional[datetime]:
    """Parses an ISO-8601 run_at; naive values are read in ``timezone``. Returns aware or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(timezone))
    return parsed


def adjust_run_at_for_relative_intent(
    run_at: Optional[datetime],
    schedule_type: str,
    timezone: str,
    request_text: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """Moves a stale one-time run_at forward when the user spoke in relative terms."""
    if schedule_type != "one_time" or run_at is None or not isinstance(request_text, str):
        return run_at
    text = request_text.strip().lower()
    if not text:
        return run_at

    mentions_relative_day = RELATIVE_DAY_RE.search(text) is not None
    mentions_this_year = THIS_YEAR_RE.search(text) is not None
    if not mentions_relative_day and not mentions_this_year:
        return run_at

    zone = ZoneInfo(timezone)
    now_local = (now or datetime.now(zone)).astimezone(zone)
    run_local = run_at.astimezone(zone)

    if mentions_this_year and run_local.year != now_local.year:
        try:
            run_local = run_local.replace(year=now_local.year)
        except ValueError:
            pass

    if run_local > now_local:
        return run_local

    if mentions_relative_day:
        candidate = now_local.replace(
            hour=run_local.hour, minute=run_local.minute, second=run_local.second, microsecond=0
        )
        if candidate <= now_local:
            candidate = candidate + timedelta(days=1)
        return candidate
    return run_local


def next_cron_run(cron_expression: str, timezone: str, now: Optional[datetime] = None) -> datetime:
    """Next fire time of ``cron_expression`` evaluated in ``timezone``, as naive UTC."""
    zone = ZoneInfo(timezone)
    base = (now or datetime.now(zone)).astimezone(zone)
    return to_naive_utc(croniter(cron_expression, base).get_next(datetime))


class TaskService:
    def __init__(
        self,
        task_repo: TaskRepository,
        run_repo: TaskRunRepository,
        log_repo: TaskLogRepository,
        dispatcher: Optional[Dispatcher] = None,
    ):
        self.task_repo = task_repo
        self.run_repo = run_repo
        self.log_repo = log_repo
        self.dispatcher = dispatcher or enqueue_task_run

    def dispatch(self, task_id: str, eta: Optional[datetime] = None) -> None:
        logger.bind(service="TaskService", task_id=task_id).info(
            f"Dispatching task run{f' at {eta.isoformat()}' if eta else ''}."
        )
        self.dispatcher(task_id, eta)

    def validate_schedule(self, schedule_type: str, run_at: Optional[datetime], timezone: str) -> None:
        if schedule_type != "one_time":
            return
        if run_at is None:
            raise TaskValidationError({"run_at": "One-time tasks require a valid run_at datetime."})
        if run_at <= datetime.now(ZoneInfo(timezone)):
            raise TaskValidationError({"run_at": "run_at must be in the future for one-time tasks."})

    def get_next_cron_run(self, cron_expression: str, timezone: str) -> datetime:
        return next_cron_run(cron_expression, timezone)

    async def create_from_tool_call(
        self,
        payload: Dict[str, Any],
        user_id: str,
        chat_message_id: Optional[str] = None,
        created_from: str = "chat",
    ) -> TaskInDB:
        """Validates the schedule, stores the task and dispatches it when it should run now or at run_at."""
        log = logger.bind(service="TaskService", user_id=user_id)
        timezone = resolve_timezone(payload.get("timezone"))
        schedule_type = str(payload.get("schedule_type") or "immediate")
        cron_expression = payload.get("cron_expression") or None

        request_text = " ".join(
            str(payload[key]) for key in ("original_user_request", "title", "description")
            if isinstance(payload.get(key), str) and payload[key].strip()
        ) or None
        run_at = parse_run_at(payload.get("run_at"), timezone)
        run_at = adjust_run_at_for_relative_intent(run_at, schedule_type, timezone, request_text)
        self.validate_schedule(schedule_type, run_at, timezone)

        next_run_at = None
        if schedule_type == "one_time":
            next_run_at = to_naive_utc(run_at)
        elif schedule_type == "recurring" and isinstance(cron_expression, str) and cron_expression.strip():
            if not croniter.is_valid(cron_expression.strip()):
                raise TaskValidationError({"cron_expression": "cron_expression is not a valid cron expression."})
            next_run_at = self.get_next_cron_run(cron_expression.strip(), timezone)

        title = str(payload.get("title") or "").strip() or "Untitled task"
        task = await self.task_repo.create(
            TaskInDB(
                user_id=str(user_id),
                title=title,
                description=payload.get("description"),
                created_from=created_from,
                chat_message_id=chat_message_id,
                status="pending",
                priority=payload.get("priority") or "normal",
                schedule_type=schedule_type,
                run_at=to_naive_utc(run_at) if run_at else None,
                cron_expression=cron_expression,
                cron_human=payload.get("cron_human"),
                event_condition=payload.get("event_condition"),
                timezone=timezone,
                execution_plan=payload.get("execution_plan") or [],
                expected_output=payload.get("expected_output"),
                original_user_request=payload.get("original_user_request"),
                next_run_at=next_run_at,
            )
        )
        log.info(f"Task {task.id} created ({schedule_type}, from {created_from}).")

        if task.schedule_type == "immediate":
            self.dispatch(task.id)
            task = await self.task_repo.update(task.id, {"status": "queued"})
        elif task.schedule_type == "one_time" and task.run_at is not None:
            self.dispatch(task.id, task.run_at)
            task = await self.task_repo.update(task.id, {"status": "queued", "next_run_at": task.run_at})
        return task

    async def start_run(self, task: TaskInDB) -> TaskRunInDB:
        now = utcnow()
        await self.task_repo.update(task.id, {"status": "running", "last_run_at": now, "next_run_at": None})
        return await self.run_repo.create(TaskRunInDB(task_id=task.id, status="running", started_at=now))

    async def log_step(self, task: TaskInDB, run: TaskRunInDB, data: Dict[str, Any]) -> TaskLogInDB:
        return await self.log_repo.create(
            TaskLogInDB(
                task_id=task.id,
                run_id=run.id,
                step=int(data.get("step") or 0),
                status=str(data.get("status") or "running"),
                thought=data.get("thought"),
                action=data.get("action"),
                observation=data.get("observation"),
                tool_used=data.get("tool_used"),
                tool_input=data.get("tool_input"),
                tool_output=data.get("tool_output"),
                logged_at=utcnow(),
            )
        )

    async def complete_run(self, task: TaskInDB, run: TaskRunInDB, output: Dict[str, Any], summary: str) -> None:
        await self.run_repo.update(
            run.id, {"status": "completed", "completed_at": utcnow(), "output": output, "summary": summary}
        )
        cron_expression = (task.cron_expression or "").strip()
        if task.schedule_type == "recurring" and cron_expression:
            # The scheduler beat promotes it once next_run_at is due.
            next_run = self.get_next_cron_run(cron_expression, task.timezone)
            await self.task_repo.update(task.id, {"status": "pending", "next_run_at": next_run})
            return
        if task.schedule_type == "event_triggered":
            await self.task_repo.update(task.id, {"status": "pending"})
            return
        await self.task_repo.update(task.id, {"status": "completed"})

    async def fail_run(self, task: TaskInDB, run: TaskRunInDB, error: str) -> None:
        await self.run_repo.update(run.id, {"status": "failed", "completed_at": utcnow(), "error": error})
        await self.task_repo.update(task.id, {"status": "failed"})

    async def promote_due(self) -> int:
        """Queues every pending task whose next_run_at has passed."""
        promoted = 0
        for task_id in await self.task_repo.list_due_ids(utcnow()):
            claimed = await self.task_repo.claim_pending(task_id)
            if claimed is None:
                continue
            self.dispatch(claimed.id)
            promoted += 1
        return promoted

    async def cancel(self, task: TaskInDB) -> TaskInDB:
        return await self.task_repo.update(task.id, {"status": "cancelled"})

    async def retry(self, task: TaskInDB) -> TaskInDB:
        self.dispatch(task.id)
        return await self.task_repo.update(task.id, {"status": "queued"})

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        schedule_type: Optional[str] = None,
        page: int = 1,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"user_id": str(user_id)}
        if status == "scheduled":
            query["status"] = {"$in": ["pending", "queued"]}
        elif status:
            query["status"] = status
        if schedule_type:
            query["schedule_type"] = schedule_type

        page = max(1, page)
        total = await self.task_repo.count(query)
        tasks = await self.task_repo.list_by(
            query, skip=(page - 1) * PER_PAGE, limit=PER_PAGE, sort=[("created_at", -1)]
        )
        items = []
        for task in tasks:
            item = task.model_dump()
            latest = await self.run_repo.latest_for_task(task.id)
            item["latest_run"] = latest.model_dump() if latest else None
            items.append(item)
        return {
            "items": items,
            "total": total,
            "page": page,
            "per_page": PER_PAGE,
            "last_page": max(1, math.ceil(total / PER_PAGE)),
        }

    async def detail(self, task: TaskInDB) -> Dict[str, Any]:
        """Task with its runs (newest first), each carrying its step logs."""
        data = task.model_dump()
        runs: List[Dict[str, Any]] = []
        for run in await self.run_repo.list_for_task(task.id):
            run_data = run.model_dump()
            run_data["logs"] = [entry.model_dump() for entry in await self.log_repo.list_for_run(run.id)]
            runs.append(run_data)
        data["runs"] = runs
        data["latest_run"] = runs[0] if runs else None
        return data

    async def logs(self, task: TaskInDB, after: Optional[datetime] = None) -> List[TaskLogInDB]:
        return await self.log_repo.list_for_task(task.id, after=after)


async def get_task_service(
    task_repo: TaskRepository = Depends(get_task_repository),
    run_repo: TaskRunRepository = Depends(get_task_run_repository),
    log_repo: TaskLogRepository = Depends(get_task_log_repository),
) -> TaskService:
    return TaskService(task_repo, run_repo, log_repo)
