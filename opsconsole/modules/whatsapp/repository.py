# opsconsole/modules/whatsapp/repository.py

from typing import Optional

from fastapi import Depends
from loguru import logger

from opsconsole.core.database import get_database
from opsconsole.core.repository import BaseRepository
from .models import WhatsAppMessageInDB


class WhatsAppMessageRepository(BaseRepository[WhatsAppMessageInDB]):
    model = WhatsAppMessageInDB
    collection_name = "whatsapp_messages"

    async def create_indexes(self):
        await self.collection.create_index("sid")
        await self.collection.create_index("to")
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def latest_for_number(self, *numbers: str) -> Optional[WhatsAppMessageInDB]:
        """Most recent record addressed to any of ``numbers``."""
        candidates = [number for number in numbers if number]
        if not candidates:
            return None
        return await self.get_by({"to": {"$in": candidates}}, sort=[("_id", -1)])

    async def set_status_by_sid(self, sid: str, status: str) -> int:
        return await self.update_many({"sid": sid}, {"status": status})


async def get_whatsapp_message_repository(db=Depends(get_database)) -> WhatsAppMessageRepository:
    return WhatsAppMessageRepository(db)
