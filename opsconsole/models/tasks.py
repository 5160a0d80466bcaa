# opsconsole/models/tasks.py

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from opsconsole.models.api_common import UtcDatetime
from opsconsole.modules.tasks.models import SCHEDULE_TYPES, TASK_PRIORITIES


class PlanStepAPI(BaseModel):
    step: Optional[int] = None
    action: Optional[str] = None
    tool: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    input_summary: Optional[str] = None
    depends_on: Optional[List[int]] = None


class TaskCreateAPI(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    schedule_type: SCHEDULE_TYPES
    run_at: Optional[str] = None
    cron_expression: Optional[str] = None
    cron_human: Optional[str] = None
    event_condition: Optional[str] = None
    timezone: Optional[str] = None
    priority: TASK_PRIORITIES = "normal"
    execution_plan: List[PlanStepAPI] = Field(default_factory=list)
    expected_output: Optional[str] = None
    original_user_request: Optional[str] = None
    chat_message_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Weekly Nairobi revenue",
                "schedule_type": "recurring",
                "cron_expression": "0 8 * * 1",
                "timezone": "Africa/Nairobi",
                "execution_plan": [
                    {"step": 1, "action": "Build report", "tool": "financial_report", "tool_input": {"city": "Nairobi"}}
                ],
            }
        }
    )


class TaskLogAPI(BaseModel):
    id: str
    task_id: str
    run_id: str
    step: int
    status: str
    thought: Optional[str] = None
    action: Optional[str] = None
    observation: Optional[str] = None
    tool_used: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None
    tool_output: Optional[Dict[str, Any]] = None
    logged_at: UtcDatetime
    created_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class TaskRunAPI(BaseModel):
    id: str
    task_id: str
    status: str
    started_at: UtcDatetime
    completed_at: Optional[UtcDatetime] = None
    output: Optional[Dict[str, Any]] = None
    summary: Optional[str] = None
    error: Optional[str] = None
    logs: Optional[List[TaskLogAPI]] = None

    model_config = ConfigDict(from_attributes=True)


class TaskAPI(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    created_from: str
    chat_message_id: Optional[str] = None
    status: str
    priority: str
    schedule_type: str
    run_at: Optional[UtcDatetime] = None
    cron_expression: Optional[str] = None
    cron_human: Optional[str] = None
    event_condition: Optional[str] = None
    timezone: str
    execution_plan: List[Any] = Field(default_factory=list)
    expected_output: Optional[str] = None
    original_user_request: Optional[str] = None
    last_run_at: Optional[UtcDatetime] = None
    next_run_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime
    latest_run: Optional[TaskRunAPI] = None
    runs: Optional[List[TaskRunAPI]] = None

    model_config = ConfigDict(from_attributes=True)
