# opsconsole/modules/chat/models.py

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import UUID4, BaseModel, ConfigDict, Field

from opsconsole.core.clock import utcnow
from opsconsole.modules.tasks.models import new_uuid

CHAT_ROLES = Literal["system", "user", "assistant"]


class ChatConversationInDB(BaseModel):
    id: str = Field(default_factory=new_uuid, alias="_id")
    user_id: str
    title: Optional[str] = None
    last_activity_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)


class ChatMessageInDB(BaseModel):
    # ObjectId keys keep insertion order within a conversation.
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    conversation_id: str
    role: str
    content: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)


class ChatMessageItem(BaseModel):
    role: CHAT_ROLES
    content: str = Field(..., max_length=4000)


class ChatRequest(BaseModel):
    conversation_id: Optional[UUID4] = None
    messages: List[ChatMessageItem] = Field(..., min_length=1, max_length=40)
