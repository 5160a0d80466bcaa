# opsconsole/core/repository.py

from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar
from decimal import Decimal

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from loguru import logger

from opsconsole.core.clock import utcnow

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseRepository(Generic[ModelType]):
    """Base MongoDB repository binding a pydantic model to a motor collection."""

    model: Type[ModelType]
    collection_name: str
    # Collections keyed by caller-supplied string ids (e.g. uuid4) keep the given _id.
    client_ids: bool = False

    def __init__(self, db):
        if not getattr(self, 'collection_name', None):
            raise AttributeError("Repository subclass must define a 'collection_name'")
        if not hasattr(self, 'model') or not issubclass(self.model, BaseModel):
            raise AttributeError("Repository subclass must define a Pydantic 'model'")
        self.db = db
        self.collection = db[self.collection_name]

    @staticmethod
    def _to_objectid(id_str: Any) -> Optional[ObjectId]:
        """Converts input to ObjectId, returning None when invalid."""
        if isinstance(id_str, ObjectId):
            return id_str
        if isinstance(id_str, str) and ObjectId.is_valid(id_str):
            return ObjectId(id_str)
        return None

    def _coerce_id(self, id: Any) -> Any:
        if self.client_ids:
            return str(id) if id else None
        return self._to_objectid(id)

    def _handle_db_exception(self, e: Exception, operation: str, doc_id: Any = None, query: Optional[Dict] = None):
        """Logs and re-raises database errors as ValueError/RuntimeError."""
        context = f"op='{operation}' coll='{self.collection_name}'"
        if doc_id:
            context += f" id='{doc_id}'"
        if query:
            context += f" query='{str(query)[:100]}'"
        log_msg = f"DB Error during {context}: {e}"

        if isinstance(e, DuplicateKeyError):
            dup_key_info = e.details.get('keyValue', {}) if e.details else {}
            logger.error(f"{log_msg} - Duplicate Key: {dup_key_info}")
            raise ValueError(f"Duplicate key error: Field(s) {list(dup_key_info.keys())} must be unique.") from e
        logger.exception(log_msg)
        raise RuntimeError(f"Database error during operation: {operation}") from e

    def _prepare_data_for_db(self, data: Dict) -> Dict:
        prepared = {}
        for key, value in data.items():
            prepared[key] = float(value) if isinstance(value, Decimal) else value
        return prepared

    def _validate(self, document: Optional[Dict]) -> Optional[ModelType]:
        return self.model.model_validate(document) if document else None

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        doc_id = self._coerce_id(id)
        if doc_id is None:
            return None
        try:
            document = await self.collection.find_one({"_id": doc_id})
        except Exception as e:
            self._handle_db_exception(e, "get_by_id", doc_id)
        return self._validate(document)

    async def get_by(self, query: Dict[str, Any], sort: Optional[List[Tuple[str, int]]] = None) -> Optional[ModelType]:
        """Returns the first document matching the query."""
        try:
            document = await self.collection.find_one(query, sort=sort)
        except Exception as e:
            self._handle_db_exception(e, "get_by", query=query)
        return self._validate(document)

    async def list_by(
        self,
        query: Optional[Dict[str, Any]] = None,
        skip: int = 0,
        limit: int = 100,
        sort: Optional[List[Tuple[str, int]]] = None,
    ) -> List[ModelType]:
        """Lists documents with paging and ordering. ``limit=0`` returns everything."""
        try:
            cursor = self.collection.find(query or {})
            if sort:
                cursor = cursor.sort(sort)
            cursor = cursor.skip(max(0, skip))
            if limit > 0:
                cursor = cursor.limit(limit)
            documents = await cursor.to_list(length=limit if limit > 0 else None)
        except Exception as e:
            self._handle_db_exception(e, "list_by", query=query)
        return [self.model.model_validate(doc) for doc in documents]

    async def create(self, data_in: BaseModel | Dict) -> ModelType:
        if isinstance(data_in, BaseModel):
            data = data_in.model_dump(by_alias=False)
        else:
            data = dict(data_in)
        data = self._prepare_data_for_db(data)

        now = utcnow()
        data.setdefault("created_at", now)
        data.setdefault("updated_at", now)

        given_id = data.pop("_id", None) or data.pop("id", None)
        data.pop("id", None)
        if self.client_ids and given_id:
            data["_id"] = str(given_id)

        try:
            result = await self.collection.insert_one(data)
        except Exception as e:
            self._handle_db_exception(e, "create")
        created = await self.get_by_id(result.inserted_id)
        if created is None:
            logger.critical(f"CRITICAL: Failed to retrieve document after insertion! ID: {result.inserted_id}, Collection: {self.collection_name}")
            raise RuntimeError("Failed to retrieve document after creation.")
        return created

    async def update(self, id: Any, data_in: BaseModel | Dict) -> Optional[ModelType]:
        """Applies a ``$set`` update and returns the updated document."""
        doc_id = self._coerce_id(id)
        if doc_id is None:
            return None
        if isinstance(data_in, BaseModel):
            data = data_in.model_dump(exclude_unset=True, by_alias=False)
        else:
            data = dict(data_in)
        data = self._prepare_data_for_db(data)
        for field in ("_id", "id", "created_at"):
            data.pop(field, None)
        if not data:
            return await self.get_by_id(doc_id)
        data["updated_at"] = utcnow()

        try:
            document = await self.collection.find_one_and_update(
                {"_id": doc_id}, {"$set": data}, return_document=ReturnDocument.AFTER
            )
        except Exception as e:
            self._handle_db_exception(e, "update", doc_id)
        if document is None:
            logger.warning(f"Document not found for update: ID {id}, Collection: {self.collection_name}")
        return self._validate(document)

    async def update_many(self, query: Dict[str, Any], data: Dict[str, Any]) -> int:
        data = self._prepare_data_for_db(dict(data))
        data["updated_at"] = utcnow()
        try:
            result = await self.collection.update_many(query, {"$set": data})
        except Exception as e:
            self._handle_db_exception(e, "update_many", query=query)
        return result.modified_count

    async def delete(self, id: Any) -> bool:
        doc_id = self._coerce_id(id)
        if doc_id is None:
            return False
        try:
            result = await self.collection.delete_one({"_id": doc_id})
        except Exception as e:
            self._handle_db_exception(e, "delete", doc_id)
        return result.deleted_count > 0

    async def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        try:
            return await self.collection.count_documents(query or {})
        except Exception as e:
            self._handle_db_exception(e, "count", query=query)
