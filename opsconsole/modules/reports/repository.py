# opsconsole/modules/reports/repository.py

from fastapi import Depends
from loguru import logger

from opsconsole.core.database import get_database
from opsconsole.core.repository import BaseRepository
from .models import ReportTaskInDB


class ReportTaskRepository(BaseRepository[ReportTaskInDB]):
    model = ReportTaskInDB
    collection_name = "report_tasks"
    client_ids = True

    async def create_indexes(self):
        await self.collection.create_index([("user_id", 1), ("created_at", -1)])
        logger.info(f"Indexes ensured for collection: {self.collection_name}")


async def get_report_task_repository(db=Depends(get_database)) -> ReportTaskRepository:
    return ReportTaskRepository(db)
