# opsconsole/worker/celery_app.py
from datetime import timedelta

from celery import Celery

from opsconsole.core.config import settings

celery_app = Celery(
    "opsconsole_tasks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "opsconsole.worker.tasks_runner",
        "opsconsole.worker.tasks_scheduling",
        "opsconsole.worker.tasks_media",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "promote-due-tasks": {
            "task": "tasks.promote_due_tasks",
            "schedule": timedelta(seconds=60),
        },
    }
)
