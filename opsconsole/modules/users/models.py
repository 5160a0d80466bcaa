# opsconsole/modules/users/models.py

from datetime import datetime

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from opsconsole.core.clock import utcnow


class UserCreateInternal(BaseModel):
    email: EmailStr
    name: str = ""
    hashed_password: str
    is_active: bool = True


class UserInDB(BaseModel):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    email: EmailStr
    name: str = ""
    hashed_password: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)
