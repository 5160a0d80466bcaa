# opsconsole/tools/actions.py

import json
import re
from datetime import date
from typing import Any, Dict, List, Optional

from loguru import logger

from opsconsole.core.clock import iso
from opsconsole.core.config import settings
from opsconsole.modules.orders.services import parse_bool
from opsconsole.modules.reports.services import ReportTaskService, workflow_payload
from opsconsole.modules.tasks.services import TaskService, parse_run_at
from opsconsole.services.email_service import SendGridService
from opsconsole.services.whatsapp_service import WhatsAppSender
from opsconsole.tools.policy import requires_confirmation

SCHEDULE_TYPE_CHOICES = ("immediate", "one_time", "recurring", "event_triggered")
PRIORITY_CHOICES = ("low", "normal", "high")
HIGH_RISK_PLAN_MESSAGE = (
    "Task includes high-risk tools (send_email/send_whatsapp_message). Explicit confirmation is required "
    "before scheduling. Re-run with confirmed=true."
)
TASK_FIELDS = (
    "title", "description", "schedule_type", "run_at", "cron_expression", "cron_human", "event_condition",
    "timezone", "priority", "execution_plan", "expected_output", "original_user_request",
)
_Y_M_D_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_y_m_d(value: Any) -> bool:
    if not isinstance(value, str) or not _Y_M_D_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
        return True
    except ValueError:
        return False


def plan_has_high_risk_tools(plan: Any) -> bool:
    if not isinstance(plan, list):
        return False
    return any(
        isinstance(step, dict) and step.get("tool") and requires_confirmation(str(step["tool"]))
        for step in plan
    )


def inject_high_risk_confirmation(plan: Any) -> List[Dict[str, Any]]:
    """Copies ``confirmed=True`` into every high-risk step that does not set it explicitly."""
    if not isinstance(plan, list):
        return []
    normalized = []
    for step in plan:
        if not isinstance(step, dict):
            continue
        step = dict(step)
        tool_input = step.get("tool_input")
        tool_input = dict(tool_input) if isinstance(tool_input, dict) else {}
        tool = str(step.get("tool") or "")
        if tool and requires_confirmation(tool) and "confirmed" not in tool_input:
            tool_input["confirmed"] = True
        step["tool_input"] = tool_input
        normalized.append(step)
    return normalized


def validate_task_args(args: Dict[str, Any]) -> Optional[str]:
    title = args.get("title")
    if _blank(title):
        return "The title field is required."
    if not isinstance(title, str):
        return "The title field must be a string."
    if len(title) > 255:
        return "The title field must not be greater than 255 characters."

    if _blank(args.get("schedule_type")):
        return "The schedule type field is required."
    if args["schedule_type"] not in SCHEDULE_TYPE_CHOICES:
        return "The selected schedule type is invalid."
    if not _blank(args.get("priority")) and args["priority"] not in PRIORITY_CHOICES:
        return "The selected priority is invalid."

    for field in ("description", "cron_expression", "cron_human", "event_condition", "timezone",
                  "expected_output", "original_user_request"):
        if args.get(field) is not None and not isinstance(args[field], str):
            return f"The {field.replace('_', ' ')} field must be a string."
    if not _blank(args.get("run_at")) and parse_run_at(args["run_at"], "UTC") is None:
        return "The run at field must be a valid date."

    plan = args.get("execution_plan")
    if plan is None:
        return None
    if not isinstance(plan, list):
        return "The execution plan field must be an array."
    for index, step in enumerate(plan):
        if not isinstance(step, dict):
            return f"The execution_plan.{index} field must be an array."
        if step.get("tool_input") is not None and not isinstance(step["tool_input"], dict):
            return f"The execution_plan.{index}.tool_input field must be an array."
        if step.get("depends_on") is not None and not isinstance(step["depends_on"], list):
            return f"The execution_plan.{index}.depends_on field must be an array."
        step_number = step.get("step")
        if step_number is not None and (isinstance(step_number, bool) or not isinstance(step_number, int)):
            return f"The execution_plan.{index}.step field must be an integer."
    return None


class TaskTools:
    """``create_task``: turns a model tool call into a stored, scheduled task."""

    def __init__(self, task_service: TaskService, user_id: Optional[str]):
        self.task_service = task_service
        self.user_id = user_id

    async def create_task(self, args: Dict[str, Any]) -> Dict[str, Any]:
        args = dict(args)
        if isinstance(args.get("execution_plan"), str):
            try:
                decoded = json.loads(args["execution_plan"])
            except ValueError:
                decoded = None
            if isinstance(decoded, list):
                args["execution_plan"] = decoded

        confirmed = bool(parse_bool(args.get("confirmed", False)))
        if not confirmed and plan_has_high_risk_tools(args.get("execution_plan")):
            return {"type": "policy_blocked", "tool": "create_task", "risk": "high", "message": HIGH_RISK_PLAN_MESSAGE}
        if confirmed:
            args["execution_plan"] = inject_high_risk_confirmation(args.get("execution_plan"))

        error = validate_task_args(args)
        if error:
            return {"type": "error", "message": error}
        if self.user_id is None:
            return {"type": "error", "message": "No authenticated user was found for task creation."}

        payload = {key: args[key] for key in TASK_FIELDS if key in args}
        try:
            task = await self.task_service.create_from_tool_call(payload, self.user_id)
        except Exception as e:
            logger.bind(service="TaskTools", user_id=self.user_id).warning(f"create_task failed: {e}")
            return {"type": "error", "message": f"Failed to create task: {e}"}

        return {
            "type": "task_created",
            "id": task.id,
            "title": task.title,
            "status": task.status,
            "schedule_type": task.schedule_type,
            "run_at": iso(task.run_at),
            "cron_human": task.cron_human,
            "next_run_at": iso(task.next_run_at),
            "task_url": f"{settings.API_V1_STR}/tasks/{task.id}",
            "message": f"Task '{task.title}' created and available at /tasks/{task.id}.",
        }


class MessagingTools:
    def __init__(self, sender: WhatsAppSender, email_service: SendGridService):
        self.sender = sender
        self.email_service = email_service

    async def send_whatsapp_message(self, args: Dict[str, Any]) -> Dict[str, Any]:
        to = args.get("to")
        message = args.get("message")
        if _blank(to):
            return {"type": "error", "message": "The to field is required."}
        if not isinstance(to, str):
            return {"type": "error", "message": "The to field must be a string."}
        if len(to) < 8:
            return {"type": "error", "message": "The to field must be at least 8 characters."}
        if _blank(message):
            return {"type": "error", "message": "The message field is required."}
        if not isinstance(message, str):
            return {"type": "error", "message": "The message field must be a string."}
        if len(message) > 4096:
            return {"type": "error", "message": "The message field must not be greater than 4096 characters."}

        try:
            result = await self.sender.send(to, message)
        except Exception as e:
            logger.bind(service="MessagingTools").warning(f"WhatsApp sender raised: {e}")
            return {"type": "error", "message": f"Failed to call WhatsApp sender: {e}"}

        if not result.get("ok"):
            details = None
            if "body" in result:
                body = result["body"]
                details = json.dumps(body) if isinstance(body, (dict, list)) else str(body)
                if len(details) > 400:
                    details = details[:400] + "..."
            return {
                "type": "error",
                "message": str(result.get("error") or "Failed to send WhatsApp message."),
                "details": details,
                "upstream_status": result.get("status"),
            }

        return {
            "type": "whatsapp_message_sent",
            "to": to,
            "provider": settings.WHATSAPP_PROVIDER,
            "result": result,
        }

    async def send_email(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return await self.email_service.send_email(args)


class ReportTools:
    def __init__(self, report_service: ReportTaskService, user_id: Optional[str]):
        self.report_service = report_service
        self.user_id = user_id

    @staticmethod
    def _merchants_error(merchants: Any) -> Optional[str]:
        if merchants is None or merchants == []:
            return "The merchants field is required."
        if not isinstance(merchants, list):
            return "The merchants field must be an array."
        for index, entry in enumerate(merchants):
            if not isinstance(entry, dict) or _blank(entry.get("merchant")):
                return f"The merchants.{index}.merchant field is required."
            if not isinstance(entry["merchant"], str):
                return f"The merchants.{index}.merchant field must be a string."
            for field in ("start_date", "end_date"):
                if entry.get(field) is not None and not _is_y_m_d(entry[field]):
                    return f"The merchants.{index}.{field} field must match the format Y-m-d."
        return None

    async def create_report_task(self, args: Dict[str, Any]) -> Dict[str, Any]:
        error = self._merchants_error(args.get("merchants"))
        if error:
            return {"type": "error", "message": error}
        if self.user_id is None:
            return {"type": "error", "message": "No authenticated user was found for report task creation."}
        try:
            task = await self.report_service.create(args["merchants"], self.user_id)
        except Exception as e:
            logger.bind(service="ReportTools", user_id=self.user_id).warning(f"create_report_task failed: {e}")
            return {"type": "error", "message": f"Failed to create report task: {e}"}
        return workflow_payload(task)

    async def get_report_task_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        task_id = args.get("task_id")
        if _blank(task_id):
            return {"type": "error", "message": "The task id field is required."}
        if not isinstance(task_id, str):
            return {"type": "error", "message": "The task id field must be a string."}
        task = await self.report_service.get(task_id, self.user_id)
        if task is None:
            return {"type": "error", "message": "Task not found."}
        return workflow_payload(task)
