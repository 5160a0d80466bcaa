# opsconsole/tools/runner.py

import json
import re
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from loguru import logger

from opsconsole.modules.memory.repository import AgentMemoryRepository
from opsconsole.modules.memory.services import AgentMemoryService
from opsconsole.modules.orders.repository import OrderRepository
from opsconsole.modules.orders.services import OrderService
from opsconsole.modules.reports.repository import ReportTaskRepository
from opsconsole.modules.reports.services import ReportTaskService
from opsconsole.modules.tasks.models import FAILED_RESULT_TYPES
from opsconsole.modules.tasks.repository import TaskLogRepository, TaskRepository, TaskRunRepository
from opsconsole.modules.tasks.services import Dispatcher, TaskService
from opsconsole.services.email_service import SendGridService
from opsconsole.services.llm_client import OllamaClient, context_usage, response_json
from opsconsole.services.planner import AgentPlanner, latest_user_message
from opsconsole.services.whatsapp_service import WhatsAppSender
from opsconsole.tools.actions import MessagingTools, ReportTools, TaskTools
from opsconsole.tools.critic import ToolCritic
from opsconsole.tools.orchestrator import Sleeper, ToolExecutionOrchestrator
from opsconsole.tools.policy import ToolPolicy, requires_confirmation
from opsconsole.tools.registry import TOOLS_BY_NAME, tool_schemas

MAX_ITERATIONS = 8
RECALL_LIMIT = 3
TOOL_RESULT_LIMIT = 6000
DELTA_FLUSH_CHARS = 6

EXPLICIT_CONFIRMATIONS = {
    "yes", "yes.", "confirm", "confirmed", "i confirm", "go ahead", "proceed", "do it", "approve", "approved",
}
TASK_CLAIM_RE = re.compile(r"\b(task (was|is|has been)?\s*created|created successfully|task id|/tasks/)\b", re.IGNORECASE)
UNVERIFIED_TASK_MESSAGE = (
    "I could not verify task creation from tool results, so I won't confirm it yet. "
    "Please ask me to create the task again."
)
NO_RESPONSE_MESSAGE = "I could not generate a response this time. Please retry your request."
_WHITESPACE_SPLIT_RE = re.compile(r"(\s+)")


def event(event_type: str, **payload: Any) -> Dict[str, Any]:
    return {"type": event_type, **payload}


def stream_text(text: str) -> List[Dict[str, Any]]:
    """Splits text into ``delta`` events on whitespace, each carrying at least a few characters."""
    if not text:
        return []
    events = []
    buffer = ""
    for piece in _WHITESPACE_SPLIT_RE.split(text):
        buffer += piece
        if len(buffer) >= DELTA_FLUSH_CHARS:
            events.append(event("delta", content=buffer))
            buffer = ""
    if buffer:
        events.append(event("delta", content=buffer))
    return events


def compact_tool_result(result: Dict[str, Any]) -> str:
    """Short JSON digest of a tool result, fed back to the model as the ``tool`` message."""
    def count(key: str) -> Optional[int]:
        return len(result[key]) if isinstance(result.get(key), list) else None

    last_error = result.get("last_error")
    summary = {
        "type": result.get("type", "unknown"),
        "message": result.get("message"),
        "tool": result.get("tool"),
        "table": result.get("table"),
        "total": result.get("total"),
        "current_page": result.get("current_page"),
        "last_page": result.get("last_page"),
        "rows_count": count("rows"),
        "orders_count": count("orders"),
        "created_count": count("created"),
        "skipped_count": count("skipped"),
        "last_error": (
            {"type": last_error.get("type"), "message": last_error.get("message")}
            if isinstance(last_error, dict) else None
        ),
        "details": result.get("details"),
        "upstream_status": result.get("upstream_status"),
    }
    encoded = json.dumps(
        {key: value for key, value in summary.items() if value is not None},
        ensure_ascii=False,
        default=str,
    )
    if len(encoded) > TOOL_RESULT_LIMIT:
        encoded = encoded[:TOOL_RESULT_LIMIT] + "..."
    return encoded


def render_plan_directive(plan: Dict[str, Any]) -> str:
    lines = ["Execution Plan:"]
    goal = str(plan.get("goal") or "").strip()
    if goal:
        lines.append(f"Goal: {goal}")
    steps = plan.get("steps") if isinstance(plan.get("steps"), list) else []
    for step in steps:
        if not isinstance(step, dict):
            continue
        try:
            index = int(step.get("step") or 0)
        except (TypeError, ValueError):
            index = 0
        action = str(step.get("action") or "").strip() or "Execute planned step"
        tool = str(step.get("tool") or "").strip()
        risk = str(step.get("risk") or "medium").strip()
        tool_part = f" (tool: {tool})" if tool else ""
        lines.append(f"{index if index > 0 else '-'}. {action}{tool_part} [risk: {risk}]")
    return "\n".join(lines)


def has_explicit_confirmation(messages: List[Dict[str, Any]]) -> bool:
    """True when the most recent user turn is a bare confirmation such as "yes" or "go ahead"."""
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        text = str(message.get("content") or "").strip().lower()
        return bool(text) and text in EXPLICIT_CONFIRMATIONS
    return False


def summarize_successes(successes: List[Dict[str, Any]]) -> Optional[str]:
    summaries: List[str] = []
    for entry in successes:
        tool = str(entry.get("tool") or "tool")
        result = entry.get("result") if isinstance(entry.get("result"), dict) else {}
        result_type = str(result.get("type") or "")
        label = tool.replace("_", " ").capitalize()

        if result_type == "orders_table":
            line = (
                f"Found {int(result.get('total') or 0)} order(s) "
                f"(page {int(result.get('current_page') or 1)} of {int(result.get('last_page') or 1)})."
            )
        elif result_type == "financial_report":
            line = (
                f"Financial report generated: {int(result.get('total_orders') or 0)} order(s), "
                f"total revenue {float(result.get('total_revenue') or 0):,.2f}."
            )
        elif result_type == "task_created":
            title = str(result.get("title") or "task")
            line = (
                f'Task "{title}" was created (ID: {result["id"]}).' if result.get("id")
                else f'Task "{title}" was created.'
            )
        elif str(result.get("message") or "").strip():
            line = f"{label}: {str(result['message']).strip()}"
        elif result_type:
            line = f"{label} completed ({result_type})."
        else:
            continue
        if line not in summaries:
            summaries.append(line)
    return " ".join(summaries[:4]) if summaries else None


def _claims_not_found(lower_content: str) -> bool:
    return any(phrase in lower_content for phrase in ("not found", "empty result", "returned an empty result"))


def align_with_results(content: str, successes: List[Dict[str, Any]]) -> Optional[str]:
    """Corrects a final answer claiming no orders when an order tool actually returned rows."""
    rows: List[Dict[str, Any]] = []
    for entry in successes:
        result = entry.get("result") if isinstance(entry.get("result"), dict) else {}
        if result.get("type") == "order_detail" and isinstance(result.get("order"), dict):
            rows.append(result["order"])
        if result.get("type") == "orders_table" and isinstance(result.get("orders"), list):
            rows.extend(order for order in result["orders"] if isinstance(order, dict))
    if not rows or not _claims_not_found(content.lower()):
        return None
    first = rows[0]
    order_no = first.get("order_no") or first.get("id") or "N/A"
    return f"I found {len(rows)} matching order(s). Example: {order_no} (status: {first.get('status') or 'N/A'})."


def sanitize_final_content(
    content: str,
    task_created: bool,
    outcomes: List[Dict[str, Any]],
    successes: List[Dict[str, Any]],
) -> str:
    """Final assistant text, checked against what the tools actually did."""
    trimmed = (content or "").strip()
    if not trimmed:
        if not outcomes:
            return NO_RESPONSE_MESSAGE
        failed = next((row for row in outcomes if row.get("type") in FAILED_RESULT_TYPES), None)
        if failed is not None:
            message = str(failed.get("message") or "").strip()
            if message:
                return f"I could not complete the request because {failed['tool']} failed: {message}"
            return f"I could not complete the request because {failed['tool']} failed."
        return summarize_successes(successes) or (
            "I completed processing the request. Please review the tool results above for details."
        )

    if TASK_CLAIM_RE.search(trimmed) and not task_created:
        return UNVERIFIED_TASK_MESSAGE
    return align_with_results(trimmed, successes) or trimmed


def _tool_call_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return raw if isinstance(raw, dict) else {}


class ToolRunner:
    """Runs the model/tool loop for one user and exposes single tool calls to the task executor."""

    def __init__(
        self,
        db,
        user_id: Optional[str],
        model: Optional[str] = None,
        trace_id: Optional[str] = None,
        llm: Optional[OllamaClient] = None,
        sender: Optional[WhatsAppSender] = None,
        email: Optional[SendGridService] = None,
        dispatcher: Optional[Dispatcher] = None,
        sleep: Optional[Sleeper] = None,
        planner: Optional[AgentPlanner] = None,
        memory: Optional[AgentMemoryService] = None,
    ):
        self.user_id = str(user_id) if user_id is not None else None
        self.llm = llm or OllamaClient(model=model)
        self.model = model or self.llm.model
        self.trace_id = trace_id
        self.policy = ToolPolicy()
        self.critic = ToolCritic()
        self.orchestrator = ToolExecutionOrchestrator(sleep=sleep)
        self.planner = planner or AgentPlanner(self.llm)
        self.memory = memory or AgentMemoryService(AgentMemoryRepository(db))
        self.tools = tool_schemas()

        order_repo = OrderRepository(db)
        task_service = TaskService(TaskRepository(db), TaskRunRepository(db), TaskLogRepository(db), dispatcher)
        self.handlers: Dict[type, Any] = {
            OrderService: OrderService(order_repo),
            TaskTools: TaskTools(task_service, self.user_id),
            MessagingTools: MessagingTools(sender or WhatsAppSender(), email or SendGridService()),
            ReportTools: ReportTools(ReportTaskService(ReportTaskRepository(db), order_repo), self.user_id),
        }
        self.log = logger.bind(service="ToolRunner", trace_id=trace_id, user_id=self.user_id)

    async def dispatch(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        spec = TOOLS_BY_NAME.get(name)
        if spec is None:
            return {"type": "error", "message": f"Unknown tool: {name}"}
        handler = getattr(self.handlers[spec.owner], spec.method)
        return await handler(args)

    async def call_tool(self, name: str, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Policy check, retried execution and critique of a single tool call."""
        args = dict(args or {})
        decision = self.policy.authorize(name, args)
        if name not in TOOLS_BY_NAME:
            result: Dict[str, Any] = {"type": "error", "message": f"Unknown tool: {name}"}
        elif not decision["allowed"]:
            result = {"type": "policy_blocked", "tool": name, "risk": decision["risk"], "message": decision["reason"]}
        else:
            result = await self.orchestrator.execute(name, args, self.dispatch)

        result["_policy"] = {"risk": decision["risk"], "requires_confirmation": decision["requires_confirmation"]}
        result["_critic"] = self.critic.evaluate(name, result)
        return result

    async def _remember(self, name: str, result: Dict[str, Any]) -> None:
        if self.user_id is None:
            return
        critique = result.get("_critic") or {}
        await self.memory.store_episode(
            self.user_id,
            "tool_outcome",
            name,
            json.dumps({"tool": name, "result_type": result.get("type"), "critic_ok": critique.get("ok")}),
            {
                "tool": name,
                "result_type": result.get("type"),
                "risk": (result.get("_policy") or {}).get("risk"),
                "critic": critique,
            },
        )

    async def _recall(self, query: str) -> Optional[str]:
        """Past tool outcomes that overlap the request, as a system note for the model."""
        if self.user_id is None or not query:
            return None
        memories = await self.memory.retrieve_relevant(self.user_id, query, limit=RECALL_LIMIT)
        lines = [f"- {memory['content']}" for memory in memories if memory["score"] > 0]
        if not lines:
            return None
        return "Relevant past tool outcomes:\n" + "\n".join(lines)

    async def _plain_retry(self, messages: List[Dict[str, Any]]) -> Optional[str]:
        """One tool-less retry with the plan and tool turns stripped, used when Ollama rejects the history."""
        fallback_messages = []
        for message in messages:
            content = str(message.get("content") or "")
            if message.get("role") == "tool" or content.startswith("Execution Plan:"):
                continue
            if len(content) > 3000:
                content = content[:3000] + "..."
            fallback_messages.append({"role": str(message.get("role") or "user"), "content": content})
        try:
            response = await self.llm.chat(fallback_messages, model=self.model)
        except httpx.HTTPError as e:
            self.log.warning(f"Plain retry failed: {e}")
            return None
        if not response.is_success:
            return None
        data = response_json(response) or {}
        reply = data.get("message") if isinstance(data.get("message"), dict) else {}
        return str(reply.get("content") or "")

    async def run_with_streaming(self, messages: List[Dict[str, Any]]) -> AsyncIterator[Dict[str, Any]]:
        """Yields chat events: status, plan, context_usage, tool_call, critic, tool_result, delta, error, done."""
        messages = list(messages)
        task_created = False
        outcomes: List[Dict[str, Any]] = []
        successes: List[Dict[str, Any]] = []
        tool_calls_count = 0

        yield event("status", phase="planning")
        plan = await self.planner.build_plan(messages, self.tools)
        yield event("plan", plan=plan)
        recalled = await self._recall(latest_user_message(messages))
        if recalled:
            messages.append({"role": "system", "content": recalled})
        messages.append({"role": "system", "content": render_plan_directive(plan)})
        self.log.info(f"Tool runner started with {len(messages)} message(s), model '{self.model}'.")

        for iteration in range(1, MAX_ITERATIONS + 1):
            try:
                response = await self.llm.chat(messages, tools=self.tools, model=self.model)
            except httpx.ConnectError:
                self.log.error(f"Could not connect to Ollama at {self.llm.base_url}.")
                yield event(
                    "error",
                    message="Could not connect to Ollama.",
                    details="Check OLLAMA_BASE_URL and confirm the Ollama server is running.",
                )
                yield event("done")
                return
            except Exception as e:
                self.log.exception(f"Unexpected error calling Ollama: {e}")
                yield event("error", message="Unexpected error calling Ollama.", details=str(e))
                yield event("done")
                return

            if not response.is_success:
                details = response.text
                self.log.warning(f"Ollama returned {response.status_code}: {details[:300]}")
                lowered = details.lower()
                if response.status_code == 400 and "looks like object" in lowered and "closing" in lowered:
                    fallback_content = await self._plain_retry(messages)
                    if fallback_content is not None:
                        for delta in stream_text(fallback_content):
                            yield delta
                        yield event("done")
                        return
                yield event(
                    "error", message="Ollama request failed.", details=details, upstream_status=response.status_code
                )
                yield event("done")
                return

            data = response_json(response) or {}
            reply = data.get("message") if isinstance(data.get("message"), dict) else {}
            content = str(reply.get("content") or "")
            tool_calls = reply.get("tool_calls") or []
            yield event("context_usage", **context_usage(data), iteration=iteration)

            assistant_entry: Dict[str, Any] = {"role": "assistant", "content": content}
            if tool_calls:
                assistant_entry["tool_calls"] = tool_calls
            messages.append(assistant_entry)

            if not tool_calls:
                final = sanitize_final_content(content, task_created, outcomes, successes)
                for delta in stream_text(final):
                    yield delta
                yield event("done")
                self.log.success(
                    f"Tool runner finished after {iteration} iteration(s), {tool_calls_count} tool call(s)."
                )
                return

            for tool_call in tool_calls:
                function = tool_call.get("function") if isinstance(tool_call, dict) else None
                function = function if isinstance(function, dict) else {}
                name = str(function.get("name") or "")
                args = _tool_call_arguments(function.get("arguments"))
                tool_calls_count += 1
                if "confirmed" not in args and requires_confirmation(name) and has_explicit_confirmation(messages):
                    args["confirmed"] = True

                yield event("tool_call", tool=name, args=args)
                result = await self.call_tool(name, args)
                critique = result["_critic"]

                outcomes.append({
                    "tool": name,
                    "type": result.get("type"),
                    "ok": critique["ok"],
                    "message": result.get("message"),
                })
                if result.get("type") not in FAILED_RESULT_TYPES:
                    successes.append({"tool": name, "result": result})
                if name == "create_task" and result.get("type") == "task_created":
                    task_created = True

                yield event("critic", tool=name, **critique)
                await self._remember(name, result)
                self.log.debug(f"Tool {name} returned {result.get('type')}.")
                yield event("tool_result", tool=name, result=result)
                messages.append({"role": "tool", "content": compact_tool_result(result)})

        self.log.warning(f"Tool runner reached {MAX_ITERATIONS} iterations without a final answer.")
        yield event("error", message="Max tool iterations reached without a final response.")
        yield event("done")
