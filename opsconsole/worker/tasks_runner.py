# opsconsole/worker/tasks_runner.py
import asyncio
import uuid
from typing import Any, Dict, Optional

from loguru import logger

from opsconsole.core.database import MongoDbContext
from opsconsole.core.logging_config import trace_id_var
from opsconsole.modules.tasks.executor import TaskExecutor
from opsconsole.modules.tasks.repository import TaskLogRepository, TaskRepository, TaskRunRepository
from opsconsole.modules.tasks.services import TaskService
from opsconsole.tools.runner import ToolRunner
from opsconsole.worker.celery_app import celery_app


async def execute_task(task_id: str, trace_id: str) -> Dict[str, Any]:
    async with MongoDbContext() as mongo:
        db = mongo.get_db()
        task_service = TaskService(TaskRepository(db), TaskRunRepository(db), TaskLogRepository(db))
        executor = TaskExecutor(task_service, lambda user_id: ToolRunner(db, user_id, trace_id=trace_id))
        return await executor.run(task_id)


@celery_app.task(bind=True, name="tasks.run_task", max_retries=3, time_limit=300, acks_late=True)
def run_task_job(self, task_id: str, trace_id: Optional[str] = None):
    """Runs a stored task's execution plan step by step; retried on unexpected errors."""
    current_trace_id = trace_id or f"task_{uuid.uuid4().hex[:12]}"
    token = trace_id_var.set(current_trace_id)
    log = logger.bind(trace_id=current_trace_id, task_name=self.name, job_id=self.request.id, task_id=task_id)
    log.info("Executing task run...")
    try:
        result = asyncio.run(execute_task(task_id, current_trace_id))
        log.info(f"Task run finished: {result.get('status')}")
        return result
    except Exception as e:
        log.exception(f"Task run failed: {e}")
        raise self.retry(exc=e, countdown=30)
    finally:
        trace_id_var.reset(token)
