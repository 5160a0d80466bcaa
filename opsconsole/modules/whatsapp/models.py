# opsconsole/modules/whatsapp/models.py

from datetime import datetime
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

from opsconsole.core.clock import utcnow

# Numeric delivery states reported by the provider webhook.
MESSAGE_STATUS_MAP = {
    0: "error",
    1: "pending",
    2: "sent",
    3: "delivered",
    4: "read",
    5: "played",
}


class WhatsAppMessageInDB(BaseModel):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    to: str
    client_name: Optional[str] = None
    store_name: Optional[str] = None
    cc_agents: Optional[str] = None
    message: str
    status: str = "sent"
    sid: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)


class SendChatAPI(BaseModel):
    to: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=4096)
