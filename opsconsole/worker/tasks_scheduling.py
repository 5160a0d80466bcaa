# opsconsole/worker/tasks_scheduling.py
import asyncio
import uuid

from loguru import logger

from opsconsole.core.database import MongoDbContext
from opsconsole.core.logging_config import trace_id_var
from opsconsole.modules.tasks.repository import TaskLogRepository, TaskRepository, TaskRunRepository
from opsconsole.modules.tasks.services import TaskService
from opsconsole.worker.celery_app import celery_app


async def promote_due() -> int:
    async with MongoDbContext() as mongo:
        db = mongo.get_db()
        task_service = TaskService(TaskRepository(db), TaskRunRepository(db), TaskLogRepository(db))
        return await task_service.promote_due()


@celery_app.task(bind=True, name="tasks.promote_due_tasks", max_retries=0, acks_late=True)
def promote_due_tasks(self) -> int:
    """Queues pending tasks whose next_run_at has passed."""
    current_trace_id = f"task_{uuid.uuid4().hex[:12]}"
    token = trace_id_var.set(current_trace_id)
    log = logger.bind(trace_id=current_trace_id, task_name=self.name, job_id=self.request.id)
    try:
        promoted = asyncio.run(promote_due())
        if promoted:
            log.info(f"Promoted {promoted} due task(s).")
        return promoted
    finally:
        trace_id_var.reset(token)
