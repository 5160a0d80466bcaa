# opsconsole/modules/tasks/repository.py

from datetime import datetime
from typing import List, Optional

from fastapi import Depends
from loguru import logger
from pymongo import ReturnDocument

from opsconsole.core.clock import utcnow
from opsconsole.core.database import get_database
from opsconsole.core.repository import BaseRepository
from .models import TaskInDB, TaskLogInDB, TaskRunInDB


class TaskRepository(BaseRepository[TaskInDB]):
    model = TaskInDB
    collection_name = "tasks"
    client_ids = True

    async def create_indexes(self):
        await self.collection.create_index([("user_id", 1), ("created_at", -1)])
        await self.collection.create_index([("status", 1), ("next_run_at", 1)])
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def list_due_ids(self, now: datetime) -> List[str]:
        cursor = self.collection.find(
            {"status": "pending", "next_run_at": {"$ne": None, "$lte": now}},
            projection={"_id": 1},
        ).sort("next_run_at", 1)
        documents = await cursor.to_list(length=None)
        return [doc["_id"] for doc in documents]

    async def claim_pending(self, task_id: str) -> Optional[TaskInDB]:
        """Flips a pending task to queued; None if another worker got there first."""
        try:
            document = await self.collection.find_one_and_update(
                {"_id": task_id, "status": "pending"},
                {"$set": {"status": "queued", "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        except Exception as e:
            self._handle_db_exception(e, "claim_pending", task_id)
        return self._validate(document)


class TaskRunRepository(BaseRepository[TaskRunInDB]):
    model = TaskRunInDB
    collection_name = "task_runs"
    client_ids = True

    async def create_indexes(self):
        await self.collection.create_index([("task_id", 1), ("started_at", -1)])
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def list_for_task(self, task_id: str, limit: int = 0) -> List[TaskRunInDB]:
        return await self.list_by({"task_id": task_id}, limit=limit, sort=[("started_at", -1)])

    async def latest_for_task(self, task_id: str) -> Optional[TaskRunInDB]:
        return await self.get_by({"task_id": task_id}, sort=[("started_at", -1)])


class TaskLogRepository(BaseRepository[TaskLogInDB]):
    model = TaskLogInDB
    collection_name = "task_logs"
    client_ids = True

    async def create_indexes(self):
        await self.collection.create_index([("task_id", 1), ("logged_at", 1)])
        await self.collection.create_index("run_id")
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def list_for_task(self, task_id: str, after: Optional[datetime] = None) -> List[TaskLogInDB]:
        query = {"task_id": task_id}
        if after is not None:
            query["logged_at"] = {"$gt": after}
        return await self.list_by(query, limit=0, sort=[("logged_at", 1), ("created_at", 1)])

    async def list_for_run(self, run_id: str) -> List[TaskLogInDB]:
        return await self.list_by({"run_id": run_id}, limit=0, sort=[("logged_at", 1), ("created_at", 1)])


async def get_task_repository(db=Depends(get_database)) -> TaskRepository:
    return TaskRepository(db)


async def get_task_run_repository(db=Depends(get_database)) -> TaskRunRepository:
    return TaskRunRepository(db)


async def get_task_log_repository(db=Depends(get_database)) -> TaskLogRepository:
    return TaskLogRepository(db)
