# opsconsole/modules/chat/repository.py

from typing import List, Optional

from fastapi import Depends
from pymongo import DESCENDING
from loguru import logger

from opsconsole.core.database import get_database
from opsconsole.core.repository import BaseRepository
from .models import ChatConversationInDB, ChatMessageInDB


class ChatConversationRepository(BaseRepository[ChatConversationInDB]):
    model = ChatConversationInDB
    collection_name = "chat_conversations"
    client_ids = True

    async def create_indexes(self):
        await self.collection.create_index([("user_id", 1), ("last_activity_at", DESCENDING)])
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def get_owned(self, conversation_id: str, user_id: str) -> Optional[ChatConversationInDB]:
        return await self.get_by({"_id": str(conversation_id), "user_id": str(user_id)})

    async def latest_for_user(self, user_id: str) -> Optional[ChatConversationInDB]:
        return await self.get_by(
            {"user_id": str(user_id)},
            sort=[("last_activity_at", DESCENDING), ("created_at", DESCENDING)],
        )


class ChatMessageRepository(BaseRepository[ChatMessageInDB]):
    model = ChatMessageInDB
    collection_name = "chat_messages"

    async def create_indexes(self):
        await self.collection.create_index([("conversation_id", 1), ("_id", DESCENDING)])
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def latest_for_conversation(self, conversation_id: str, limit: int) -> List[ChatMessageInDB]:
        """Newest first."""
        return await self.list_by(
            {"conversation_id": str(conversation_id)}, limit=limit, sort=[("_id", DESCENDING)]
        )


async def get_chat_conversation_repository(db=Depends(get_database)) -> ChatConversationRepository:
    return ChatConversationRepository(db)


async def get_chat_message_repository(db=Depends(get_database)) -> ChatMessageRepository:
    return ChatMessageRepository(db)
