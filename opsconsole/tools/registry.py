# opsconsole/tools/registry.py

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from opsconsole.modules.orders.services import OrderService
from opsconsole.tools.actions import MessagingTools, ReportTools, TaskTools


@dataclass(frozen=True)
class ToolSpec:
    """A tool exposed to the model: its function schema and the method implementing it."""

    name: str
    description: str
    parameters: Dict[str, Any]
    owner: type
    method: str

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


def _prop(type_: str, description: Optional[str] = None, **extra) -> Dict[str, Any]:
    prop: Dict[str, Any] = {"type": type_}
    if description:
        prop["description"] = description
    prop.update(extra)
    return prop


def _object(properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


CONFIRMED = _prop("boolean", "Explicit confirmation for high-risk action")

_ORDER_FIELDS = {
    "amount": _prop("number"),
    "quantity": _prop("integer"),
    "status": _prop("string"),
    "delivery_date": _prop("string"),
    "client_name": _prop("string"),
    "client_city": _prop("string"),
    "address": _prop("string"),
    "product_name": _prop("string"),
    "city": _prop("string"),
    "country": _prop("string"),
    "phone": _prop("string"),
    "agent": _prop("string"),
    "store_name": _prop("string"),
    "comments": _prop("string"),
    "instructions": _prop("string"),
}

_EMAIL_PARAMETERS = _object(
    {
        "to": _prop("string", "Recipient email address"),
        "subject": _prop("string", "Email subject"),
        "content": _prop("string", "Email body content"),
        "content_type": _prop("string", "text/plain or text/html"),
        "from_email": _prop("string", "Optional sender email"),
        "from_name": _prop("string", "Optional sender name"),
        "confirmed": CONFIRMED,
    },
    required=["to", "subject", "content"],
)

TOOL_SPECS: List[ToolSpec] = [
    ToolSpec(
        name="list_orders",
        description=(
            "List orders from the orders collection. Supports filtering by status, client_name, merchant, "
            "phone, code, alt_no, agent, city, country, search query, and pagination."
        ),
        parameters=_object({
            "page": _prop("integer", "Page number (default 1)"),
            "per_page": _prop("integer", "Results per page (default 15, max 50)"),
            "status": _prop("string", "Filter by order status"),
            "client_name": _prop("string", "Filter by client name (partial match)"),
            "merchant": _prop("string", "Filter by merchant (partial match)"),
            "phone": _prop("string", "Filter by phone (partial match)"),
            "code": _prop("string", "Filter by code (partial match)"),
            "code_is_empty": _prop("boolean", "Set true to return rows where code is null/empty; false for non-empty code"),
            "alt_no": _prop("string", "Filter by alternative number (partial match)"),
            "agent": _prop("string", "Filter by agent name"),
            "city": _prop("string", "Filter by city"),
            "country": _prop("string", "Filter by country"),
            "search": _prop(
                "string",
                "Search across order_no, product_name, client_name, merchant, city, agent, phone, code, alt_no, store_name",
            ),
        }),
        owner=OrderService,
        method="list_orders",
    ),
    ToolSpec(
        name="get_order",
        description="Get full details of a single order by its id or order_no.",
        parameters=_object({
            "id": _prop("string", "Order id"),
            "order_no": _prop("string", "Order number"),
        }),
        owner=OrderService,
        method="get_order",
    ),
    ToolSpec(
        name="create_order",
        description="Create a new order in the orders collection.",
        parameters=_object(
            {
                "order_no": _prop("string"),
                "order_date": _prop("string", "ISO date e.g. 2025-01-15"),
                "item": _prop("string"),
                **_ORDER_FIELDS,
                "confirmed": CONFIRMED,
            },
            required=["order_no", "client_name", "product_name", "amount"],
        ),
        owner=OrderService,
        method="create_order",
    ),
    ToolSpec(
        name="edit_order",
        description=(
            "Edit/update an existing order. Provide id OR order_no to identify it, "
            "then only the fields you want to change."
        ),
        parameters=_object({
            "id": _prop("string", "Order id"),
            "order_no": _prop("string", "Order number"),
            **_ORDER_FIELDS,
            "confirmed": _prop("boolean"),
        }),
        owner=OrderService,
        method="edit_order",
    ),
    ToolSpec(
        name="financial_report",
        description=(
            "Generate a financial report for delivered + remitted orders with optional merchant/date/location/agent "
            "filters, including totals, product and city breakdowns."
        ),
        parameters=_object({
            "merchant": _prop("string", "Merchant name (partial match)"),
            "start_date": _prop("string", "Start date (YYYY-MM-DD)"),
            "end_date": _prop("string", "End date (YYYY-MM-DD)"),
            "country": _prop("string", "Country filter"),
            "city": _prop("string", "City filter (partial match)"),
            "agent": _prop("string", "Agent filter. If omitted, defaults to remitted variants."),
            "limit": _prop("integer", "Number of orders to include in listing section, max 200, default 50"),
        }),
        owner=OrderService,
        method="financial_report",
    ),
    ToolSpec(
        name="call_center_daily_report",
        description=(
            "Generate a daily call center report using delivery_date for the current day by default, showing "
            "orders with status 'scheduled' or 'delivered' and code not null. Lists only order_no and mpesa_code."
        ),
        parameters=_object({
            "merchant": _prop("string", "Merchant filter (partial match)"),
            "start_date": _prop("string", "Start date (YYYY-MM-DD)"),
            "end_date": _prop("string", "End date (YYYY-MM-DD)"),
            "country": _prop("string", "Country filter"),
            "city": _prop("string", "City filter (partial match)"),
            "limit": _prop("integer", "Rows to include in listing section, max 200, default 50"),
        }),
        owner=OrderService,
        method="call_center_daily_report",
    ),
    ToolSpec(
        name="call_center_monthly_report",
        description=(
            "Generate a monthly call center report showing total orders for a requested month filtered by call "
            "center agent (cc_email), with summary counts grouped by status."
        ),
        parameters=_object({
            "month": _prop("string", "Target month (YYYY-MM). Required unless start_date/end_date are provided."),
            "cc_email": _prop("string", "Call center agent email filter (exact, case-insensitive)"),
            "merchant": _prop("string", "Merchant filter (partial match)"),
            "country": _prop("string", "Country filter"),
            "city": _prop("string", "City filter (partial match)"),
            "start_date": _prop("string", "Optional start date (YYYY-MM-DD) on order_date"),
            "end_date": _prop("string", "Optional end date (YYYY-MM-DD) on order_date"),
            "limit": _prop("integer", "Rows to include in listing section, max 200, default 50"),
        }),
        owner=OrderService,
        method="call_center_monthly_report",
    ),
    ToolSpec(
        name="merchant_report",
        description=(
            "Generate a merchant report for one order status with per-merchant revenue share, top products, "
            "status breakdown and delivery instruction analysis."
        ),
        parameters=_object(
            {
                "status": _prop("string", "Required order status filter (for example delivered, scheduled, cancelled, pending)"),
                "merchant": _prop(
                    "string", "Optional merchant name (partial match). If omitted, returns multi-merchant report."
                ),
                "start_date": _prop("string", "Start date (YYYY-MM-DD) using order_date"),
                "end_date": _prop("string", "End date (YYYY-MM-DD) using order_date"),
                "country": _prop("string", "Country filter"),
                "city": _prop("string", "City filter (partial match)"),
                "agent": _prop("string", "Agent filter (partial match)"),
                "limit": _prop("integer", "Max rows for merchant table, default 20, max 200"),
            },
            required=["status"],
        ),
        owner=OrderService,
        method="merchant_report",
    ),
    ToolSpec(
        name="create_report_task",
        description=(
            "Create a multi-merchant report workflow task. Steps: check scheduled+coded orders, confirm delivery "
            "update, confirm remitted update, then provide report download links."
        ),
        parameters=_object(
            {
                "merchants": _prop(
                    "array",
                    "List of merchant workflows: [{merchant,start_date,end_date}] with dates in YYYY-MM-DD.",
                ),
            },
            required=["merchants"],
        ),
        owner=ReportTools,
        method="create_report_task",
    ),
    ToolSpec(
        name="get_report_task_status",
        description="Get current status of a report workflow task by task_id.",
        parameters=_object({"task_id": _prop("string", "Task id UUID")}, required=["task_id"]),
        owner=ReportTools,
        method="get_report_task_status",
    ),
    ToolSpec(
        name="send_whatsapp_message",
        description="Send a WhatsApp message using the configured WhatsApp provider integration.",
        parameters=_object(
            {
                "to": _prop("string", "Recipient phone number in international format, e.g. +2547..."),
                "message": _prop("string", "Message body to send"),
                "confirmed": CONFIRMED,
            },
            required=["to", "message"],
        ),
        owner=MessagingTools,
        method="send_whatsapp_message",
    ),
    ToolSpec(
        name="create_task",
        description=(
            "Create a background task that runs immediately, at a future time, on a recurring cron schedule, "
            "or when an event condition becomes true."
        ),
        parameters=_object(
            {
                "title": _prop("string", "Short descriptive title for the task"),
                "description": _prop("string", "What this task will do"),
                "schedule_type": _prop("string", enum=["immediate", "one_time", "recurring", "event_triggered"]),
                "run_at": _prop("string", "ISO8601 datetime for one_time tasks"),
                "cron_expression": _prop("string", "Cron expression for recurring tasks"),
                "cron_human": _prop("string", "Human readable schedule description"),
                "event_condition": _prop("string", "Condition for event-triggered tasks"),
                "timezone": _prop("string", "IANA timezone e.g. Africa/Nairobi"),
                "priority": _prop("string", enum=["low", "normal", "high"]),
                "execution_plan": _prop(
                    "array",
                    items=_object({
                        "step": _prop("integer"),
                        "action": _prop("string"),
                        "tool": _prop("string"),
                        "tool_input": _prop("object"),
                        "input_summary": _prop("string"),
                        "depends_on": _prop("array", items={"type": "integer"}),
                    }),
                ),
                "expected_output": _prop("string"),
                "original_user_request": _prop("string"),
                "confirmed": _prop(
                    "boolean", "Optional explicit confirmation to propagate to high-risk steps in execution_plan"
                ),
            },
            required=["title", "schedule_type"],
        ),
        owner=TaskTools,
        method="create_task",
    ),
    ToolSpec(
        name="send_email",
        description="Send an email via SendGrid.",
        parameters=_EMAIL_PARAMETERS,
        owner=MessagingTools,
        method="send_email",
    ),
    ToolSpec(
        name="send_grid_email",
        description="Send an email via SendGrid (alias of send_email).",
        parameters=_EMAIL_PARAMETERS,
        owner=MessagingTools,
        method="send_email",
    ),
]

TOOLS_BY_NAME: Dict[str, ToolSpec] = {spec.name: spec for spec in TOOL_SPECS}


def tool_schemas() -> List[Dict[str, Any]]:
    return [spec.schema() for spec in TOOL_SPECS]


def tool_names() -> List[str]:
    return [spec.name for spec in TOOL_SPECS]
