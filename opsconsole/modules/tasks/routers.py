# opsconsole/modules/tasks/routers.py

import asyncio
import json
from datetime import timedelta
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from opsconsole.core.clock import utcnow
from opsconsole.core.security import CurrentUser
from opsconsole.models.api_common import PaginatedResponse, to_public
from opsconsole.models.tasks import TaskAPI, TaskCreateAPI, TaskLogAPI
from .models import TERMINAL_STATUSES, TaskInDB
from .services import TaskService, TaskValidationError, get_task_service

tasks_router = APIRouter()

STREAM_MAX_POLLS = 120
STREAM_POLL_INTERVAL = 1.0


async def _owned_task(task_service: TaskService, task_id: str, user_id: str) -> TaskInDB:
    task = await task_service.task_repo.get_by_id(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found.")
    if task.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This action is unauthorized.")
    return task


@tasks_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a background task",
    tags=["Tasks"],
)
async def create_task(
    current_user: CurrentUser,
    task_in: TaskCreateAPI,
    task_service: TaskService = Depends(get_task_service),
):
    user_id = str(current_user.id)
    payload = task_in.model_dump(exclude_none=True)
    payload["execution_plan"] = [step.model_dump(exclude_none=True) for step in task_in.execution_plan]
    try:
        task = await task_service.create_from_tool_call(
            payload, user_id, task_in.chat_message_id, created_from="api"
        )
    except TaskValidationError as e:
        logger.bind(user_id=user_id).warning(f"Task creation rejected: {e.errors}")
        return JSONResponse(status_code=422, content={"message": str(e), "errors": e.errors})

    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "task": TaskAPI.model_validate(task).model_dump(mode="json"),
            "message": f"Task '{task.title}' created. Track it at /tasks/{task.id}",
        },
    )


@tasks_router.get(
    "",
    response_model=PaginatedResponse[TaskAPI],
    summary="List the current user's tasks",
    tags=["Tasks"],
)
async def list_tasks(
    current_user: CurrentUser,
    task_status: Optional[str] = Query(None, alias="status"),
    schedule_type: Optional[str] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    task_service: TaskService = Depends(get_task_service),
):
    return await task_service.list_for_user(str(current_user.id), task_status, schedule_type, page)


@tasks_router.get(
    "/{task_id}",
    response_model=TaskAPI,
    summary="Get a task with its runs and step logs",
    tags=["Tasks"],
)
async def show_task(
    current_user: CurrentUser,
    task_id: str = Path(...),
    task_service: TaskService = Depends(get_task_service),
):
    task = await _owned_task(task_service, task_id, str(current_user.id))
    return await task_service.detail(task)


@tasks_router.get(
    "/{task_id}/logs",
    response_model=List[TaskLogAPI],
    summary="List a task's step logs",
    tags=["Tasks"],
)
async def task_logs(
    current_user: CurrentUser,
    task_id: str = Path(...),
    task_service: TaskService = Depends(get_task_service),
):
    task = await task_service.task_repo.get_by({"_id": task_id, "user_id": str(current_user.id)})
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found.")
    return await task_service.logs(task)


@tasks_router.post(
    "/{task_id}/cancel",
    response_model=TaskAPI,
    summary="Cancel a task",
    tags=["Tasks"],
)
async def cancel_task(
    current_user: CurrentUser,
    task_id: str = Path(...),
    task_service: TaskService = Depends(get_task_service),
):
    task = await _owned_task(task_service, task_id, str(current_user.id))
    logger.bind(user_id=str(current_user.id), task_id=task_id).info("Task cancelled.")
    return await task_service.cancel(task)


@tasks_router.post(
    "/{task_id}/retry",
    response_model=TaskAPI,
    summary="Queue a task for another run",
    tags=["Tasks"],
)
async def retry_task(
    current_user: CurrentUser,
    task_id: str = Path(...),
    task_service: TaskService = Depends(get_task_service),
):
    task = await _owned_task(task_service, task_id, str(current_user.id))
    logger.bind(user_id=str(current_user.id), task_id=task_id).info("Task queued for retry.")
    return await task_service.retry(task)


@tasks_router.get(
    "/{task_id}/stream",
    summary="Server-sent events of new task logs until the task finishes",
    tags=["Tasks"],
)
async def stream_task(
    current_user: CurrentUser,
    task_id: str = Path(...),
    task_service: TaskService = Depends(get_task_service),
):
    task = await _owned_task(task_service, task_id, str(current_user.id))

    async def events() -> AsyncIterator[str]:
        cursor = utcnow() - timedelta(seconds=1)
        for _ in range(STREAM_MAX_POLLS):
            for entry in await task_service.logs(task, after=cursor):
                yield f"data: {json.dumps(to_public(entry))}\n\n"
                cursor = entry.logged_at or utcnow()

            current = await task_service.task_repo.get_by_id(task.id)
            if current is None or current.status in TERMINAL_STATUSES:
                final_status = current.status if current else "cancelled"
                yield f"data: {json.dumps({'type': 'done', 'status': final_status})}\n\n"
                return
            await asyncio.sleep(STREAM_POLL_INTERVAL)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
