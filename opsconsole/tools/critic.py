# opsconsole/tools/critic.py

from typing import Any, Dict, List


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class ToolCritic:
    """Sanity checks on tool results before they are reported back."""

    def evaluate(self, tool_name: str, result: Dict[str, Any]) -> Dict[str, Any]:
        if result.get("type") == "error":
            return {"ok": False, "issues": [str(result.get("message") or "Tool failed.")], "severity": "high"}

        issues: List[str] = []
        severity = "low"
        if tool_name == "financial_report":
            if _number(result.get("total_orders")) <= 0:
                issues.append("Financial report returned zero orders.")
                severity = "medium"
            if _number(result.get("total_revenue")) < 0:
                issues.append("Financial report returned negative revenue.")
                severity = "high"
        if tool_name == "send_whatsapp_message" and result.get("type") != "whatsapp_message_sent":
            issues.append("WhatsApp send did not return success type.")
            severity = "high"
        if tool_name == "create_task" and (not result.get("id") or not result.get("task_url")):
            issues.append("Task creation missing id or task_url.")
            severity = "high"
        return {"ok": not issues, "issues": issues, "severity": severity}
