# opsconsole/tools/orchestrator.py

import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

Executor = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]
Sleeper = Callable[[float], Awaitable[Any]]

_NON_DIGITS_RE = re.compile(r"\D+")


def alternative_args(tool_name: str, args: Dict[str, Any], attempt: int) -> Dict[str, Any]:
    """Normalized arguments for the next attempt after a failed one."""
    normalized = {
        key: value.strip() if isinstance(value, str) else value
        for key, value in args.items()
        if value is not None and value != ""
    }
    if tool_name == "send_whatsapp_message" and isinstance(normalized.get("to"), str):
        digits = _NON_DIGITS_RE.sub("", normalized["to"])
        if digits:
            normalized["to"] = "+" + digits
    if tool_name == "financial_report" and attempt >= 2:
        normalized.pop("city", None)
    return normalized


class ToolExecutionOrchestrator:
    """Runs a tool with bounded retries, relaxing arguments between attempts."""

    def __init__(self, max_attempts: int = 3, sleep: Optional[Sleeper] = None):
        self.max_attempts = max_attempts
        self.sleep = sleep or asyncio.sleep

    async def execute(self, tool_name: str, args: Dict[str, Any], executor: Executor) -> Dict[str, Any]:
        log = logger.bind(service="ToolOrchestrator", tool=tool_name)
        history: List[Dict[str, Any]] = []
        current_args = dict(args)
        last_error: Dict[str, Any] = {}

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await executor(tool_name, current_args)
            except Exception as e:
                log.exception(f"Tool raised on attempt {attempt}: {e}")
                result = {"type": "error", "message": str(e) or e.__class__.__name__}

            history.append({
                "attempt": attempt,
                "args": current_args,
                "result_type": str(result.get("type", "unknown")),
                "message": str(result.get("message") or ""),
            })
            if result.get("type") != "error":
                result["_execution"] = {"attempts": attempt, "history": history, "recovered": attempt > 1}
                if attempt > 1:
                    log.info(f"Recovered after {attempt} attempts.")
                return result

            last_error = result
            if attempt < self.max_attempts:
                log.warning(f"Attempt {attempt} failed: {result.get('message')}. Retrying.")
                await self.sleep(0.2 * attempt)
                current_args = alternative_args(tool_name, current_args, attempt)

        last_message = str(last_error.get("message") or "").strip()
        return {
            "type": "error",
            "message": (
                f"Tool execution failed after retries: {last_message}"
                if last_message else "Tool execution failed after retries."
            ),
            "tool": tool_name,
            "last_error": last_error,
            "_execution": {"attempts": self.max_attempts, "history": history, "recovered": False},
        }
