# opsconsole/modules/tasks/models.py

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from opsconsole.core.clock import utcnow

SCHEDULE_TYPES = Literal["immediate", "one_time", "recurring", "event_triggered"]
TASK_PRIORITIES = Literal["low", "normal", "high"]
TASK_STATUSES = Literal["pending", "queued", "running", "completed", "failed", "cancelled"]
RUN_STATUSES = Literal["running", "completed", "failed"]

TERMINAL_STATUSES = ("completed", "failed", "cancelled")
FAILED_RESULT_TYPES = ("error", "policy_blocked")


def new_uuid() -> str:
    return str(uuid.uuid4())


class TaskInDB(BaseModel):
    id: str = Field(default_factory=new_uuid, alias="_id")
    user_id: str
    title: str
    description: Optional[str] = None
    created_from: str = "chat"
    chat_message_id: Optional[str] = None
    status: TASK_STATUSES = "pending"
    priority: str = "normal"
    schedule_type: str = "immediate"
    run_at: Optional[datetime] = None
    cron_expression: Optional[str] = None
    cron_human: Optional[str] = None
    event_condition: Optional[str] = None
    timezone: str = "UTC"
    execution_plan: List[Any] = Field(default_factory=list)
    expected_output: Optional[str] = None
    original_user_request: Optional[str] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)


class TaskRunInDB(BaseModel):
    id: str = Field(default_factory=new_uuid, alias="_id")
    task_id: str
    status: RUN_STATUSES = "running"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    output: Optional[Dict[str, Any]] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)


class TaskLogInDB(BaseModel):
    id: str = Field(default_factory=new_uuid, alias="_id")
    task_id: str
    run_id: str
    step: int = 0
    status: str = "running"
    thought: Optional[str] = None
    action: Optional[str] = None
    observation: Optional[str] = None
    tool_used: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    tool_output: Optional[Dict[str, Any]] = None
    logged_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)
