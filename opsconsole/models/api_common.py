# opsconsole/models/api_common.py

from datetime import datetime, timezone
from typing import Annotated, Any, Generic, List, Optional, TypeVar

from bson import ObjectId
from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer


def _stringify_id(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    return value


def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ObjectId rendered as its hex string in API payloads.
IdStr = Annotated[str, BeforeValidator(_stringify_id)]
# Naive UTC datetimes from MongoDB rendered as ISO-8601 with offset.
UtcDatetime = Annotated[datetime, PlainSerializer(_serialize_datetime, return_type=Optional[str])]

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    per_page: int
    last_page: int

    model_config = ConfigDict(from_attributes=True)


def to_public(value: Any) -> Any:
    """JSON-ready copy of a DB model or document: ObjectId as str, datetimes as ISO."""
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=False)
    if isinstance(value, dict):
        return {("id" if key == "_id" else key): to_public(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_public(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return _serialize_datetime(value)
    return value
