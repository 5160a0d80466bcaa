# opsconsole/core/database.py

from contextlib import AbstractAsyncContextManager
from typing import Optional

import motor.motor_asyncio
from motor.motor_asyncio import AsyncIOMotorDatabase
from fastapi import HTTPException, status
from loguru import logger

from opsconsole.core.config import settings

DEFAULT_DB_NAME = "opsconsole"


def database_name_from_uri(uri: str) -> str:
    uri_path = uri.rsplit('/', 1)[-1]
    db_name = uri_path.split('?')[0]
    if not db_name or '@' in db_name or ':' in db_name or len(db_name) > 63:
        return DEFAULT_DB_NAME
    return db_name


class MongoDbContext(AbstractAsyncContextManager):
    client: Optional[motor.motor_asyncio.AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    async def connect(self):
        """Establishes and verifies the MongoDB connection."""
        if self.client is not None and self.db is not None:
            logger.info("MongoDB connection already established.")
            return

        logger.info("Connecting to MongoDB...")
        try:
            self.client = motor.motor_asyncio.AsyncIOMotorClient(
                settings.MONGODB_URI,
                uuidRepresentation='standard',
                serverSelectionTimeoutMS=5000,
            )
            await self.client.admin.command('ping')
            db_name = database_name_from_uri(settings.MONGODB_URI)
            self.db = self.client[db_name]
            logger.success(f"MongoDB connection successful to database '{db_name}'.")
        except Exception as e:
            logger.critical(f"FATAL: Failed to connect to MongoDB: {e}")
            self.client = None
            self.db = None
            raise ConnectionError(f"MongoDB connection failed: {e}") from e

    async def disconnect(self):
        if self.client is not None:
            logger.info("Closing MongoDB connection...")
            try:
                self.client.close()
            finally:
                self.client = None
                self.db = None

    def get_db(self) -> AsyncIOMotorDatabase:
        if self.db is None:
            logger.critical("Attempted to get MongoDB instance, but it's not available.")
            raise RuntimeError("MongoDB database is not connected or initialized.")
        return self.db


mongo_manager = MongoDbContext()


def get_mongo_db_instance() -> AsyncIOMotorDatabase:
    return mongo_manager.get_db()


async def get_database() -> AsyncIOMotorDatabase:
    """FastAPI dependency returning the MongoDB database."""
    try:
        return get_mongo_db_instance()
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Database connection not available: {e}")
