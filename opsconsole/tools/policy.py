# opsconsole/tools/policy.py

from typing import Any, Dict

from opsconsole.modules.orders.services import parse_bool

RISK_BY_TOOL = {
    "list_orders": "low",
    "get_order": "low",
    "financial_report": "low",
    "call_center_daily_report": "low",
    "call_center_monthly_report": "low",
    "merchant_report": "low",
    "get_report_task_status": "low",
    "create_task": "medium",
    "create_report_task": "medium",
    "send_email": "high",
    "send_grid_email": "high",
    "send_whatsapp_message": "high",
    "create_order": "high",
    "edit_order": "high",
}
CONFIRMATION_RISKS = ("high", "critical")
CONFIRMATION_REASON = "Explicit confirmation is required for this high-risk action. Re-run with confirmed=true."


def risk_for(tool_name: str) -> str:
    return RISK_BY_TOOL.get(tool_name, "medium")


def requires_confirmation(tool_name: str) -> bool:
    return risk_for(tool_name) in CONFIRMATION_RISKS


class ToolPolicy:
    """Gatekeeper deciding whether a tool call may run with the given arguments."""

    def authorize(self, tool_name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        risk = risk_for(tool_name)
        if risk not in CONFIRMATION_RISKS:
            return {"allowed": True, "risk": risk, "reason": None, "requires_confirmation": False}
        if parse_bool(args.get("confirmed", False)):
            return {"allowed": True, "risk": risk, "reason": None, "requires_confirmation": True}
        return {
            "allowed": False,
            "risk": risk,
            "reason": CONFIRMATION_REASON,
            "requires_confirmation": True,
        }
