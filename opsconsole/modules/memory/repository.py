# opsconsole/modules/memory/repository.py

from datetime import datetime
from typing import List

from pymongo import DESCENDING
from loguru import logger

from opsconsole.core.repository import BaseRepository
from .models import AgentMemoryInDB


class AgentMemoryRepository(BaseRepository[AgentMemoryInDB]):
    model = AgentMemoryInDB
    collection_name = "agent_memories"
    client_ids = True

    async def create_indexes(self):
        await self.collection.create_index([("user_id", 1), ("scope", 1), ("created_at", DESCENDING)])
        await self.collection.create_index("memory_key")
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def recent_for_user(self, user_id: str, limit: int = 100) -> List[AgentMemoryInDB]:
        return await self.list_by({"user_id": str(user_id)}, limit=limit, sort=[("created_at", DESCENDING)])

    async def touch(self, ids: List[str], when: datetime) -> int:
        if not ids:
            return 0
        return await self.update_many({"_id": {"$in": ids}}, {"last_accessed_at": when})
