# opsconsole/modules/memory/models.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from opsconsole.core.clock import utcnow
from opsconsole.modules.tasks.models import new_uuid

EMBEDDING_BUCKETS = 16


class AgentMemoryInDB(BaseModel):
    id: str = Field(default_factory=new_uuid, alias="_id")
    user_id: str
    scope: str = "general"
    memory_key: str
    content: str
    embedding: List[float] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_accessed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)
