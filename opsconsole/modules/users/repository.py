# opsconsole/modules/users/repository.py

from typing import Optional

from fastapi import Depends
from loguru import logger

from opsconsole.core.database import get_database
from opsconsole.core.repository import BaseRepository
from .models import UserInDB


class UserRepository(BaseRepository[UserInDB]):
    model = UserInDB
    collection_name = "users"

    async def create_indexes(self):
        await self.collection.create_index("email", unique=True)
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def get_by_email(self, email: str) -> Optional[UserInDB]:
        return await self.get_by({"email": email.strip().lower()})


async def get_user_repository(db=Depends(get_database)) -> UserRepository:
    return UserRepository(db)
