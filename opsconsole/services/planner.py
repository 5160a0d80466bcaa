# opsconsole/services/planner.py

import json
from typing import Any, Dict, List, Optional

from loguru import logger

from opsconsole.core.config import settings
from opsconsole.services.llm_client import OllamaClient, response_json


def latest_user_message(messages: List[Dict[str, Any]]) -> str:
    for message in reversed(messages):
        content = str(message.get("content") or "").strip()
        if message.get("role") == "user" and content:
            return content
    return ""


def fallback_plan(goal: str) -> Dict[str, Any]:
    return {
        "goal": goal,
        "success_criteria": [
            "Execute requested actions with successful tool responses.",
            "Return clear failure reasons when retries fail.",
        ],
        "steps": [
            {"step": 1, "action": "Analyze request and choose tools.", "tool": "none", "depends_on": [], "risk": "medium"},
            {
                "step": 2,
                "action": "Execute selected tools with retry/recovery.",
                "tool": "dynamic",
                "depends_on": [1],
                "risk": "medium",
            },
        ],
    }


def planner_timeout(timeout: float, configured: Optional[int] = None) -> int:
    """Planner calls get a short leash: between 3 and 20 seconds."""
    value = configured if configured is not None else min(int(timeout), 12)
    return max(3, min(20, int(value)))


class AgentPlanner:
    """Asks the model for a JSON plan before the tool loop; never fails the request."""

    def __init__(self, client: OllamaClient, enabled: Optional[bool] = None):
        self.client = client
        self.enabled = settings.AGENT_PLANNER_ENABLED if enabled is None else enabled

    async def build_plan(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> Dict[str, Any]:
        goal = latest_user_message(messages)
        if not goal:
            return fallback_plan("No explicit user goal detected.")
        if not self.enabled:
            return fallback_plan(goal)

        log = logger.bind(service="AgentPlanner")
        tool_names = [
            str(tool.get("function", {}).get("name") or "") for tool in tools
            if tool.get("function", {}).get("name")
        ]
        planner_messages = [
            {
                "role": "system",
                "content": (
                    "You are a planning module. Return strict JSON only with keys: goal, success_criteria, steps.\n"
                    "Each step must include: step, action, tool, depends_on, risk.\n"
                    "Valid risk values: low, medium, high, critical.\n"
                    "Use available tools only: " + ", ".join(tool_names)
                ),
            },
            {"role": "user", "content": goal},
        ]

        timeout = planner_timeout(self.client.timeout, settings.AGENT_PLANNER_TIMEOUT)
        try:
            response = await self.client.chat(planner_messages, timeout=timeout)
        except Exception as e:
            log.warning(f"Planner call failed, using fallback plan: {e}")
            return fallback_plan(goal)
        if not response.is_success:
            return fallback_plan(goal)

        data = response_json(response) or {}
        reply = data.get("message") if isinstance(data.get("message"), dict) else {}
        content = str(reply.get("content") or "")
        try:
            decoded = json.loads(content) if content else None
        except ValueError:
            decoded = None
        if not isinstance(decoded, dict):
            return fallback_plan(goal)

        if not isinstance(decoded.get("goal"), str):
            decoded["goal"] = goal
        if not isinstance(decoded.get("steps"), list) or not decoded["steps"]:
            return fallback_plan(goal)
        decoded.setdefault("success_criteria", ["Task completed with validated tool outputs."])
        return decoded
