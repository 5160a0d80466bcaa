# opsconsole/modules/reports/services.py

import csv
import io
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from bson import ObjectId
from fastapi import Depends
from loguru import logger
from openpyxl import Workbook

from opsconsole.core.clock import iso, utcnow
from opsconsole.core.config import settings
from opsconsole.models.api_common import to_public
from opsconsole.modules.orders.models import OrderInDB, parse_amount
from opsconsole.modules.orders.repository import (
    OrderRepository,
    date_between,
    get_order_repository,
    iexact,
    like,
)
from .models import REPORT_FIELDS, REPORT_HEADINGS, MerchantWorkflowItem, ReportTaskInDB
from .repository import ReportTaskRepository, get_report_task_repository

EXPORT_PATH = f"{settings.API_V1_STR}/reports/financial/export"
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_FORMULA_PREFIXES = ("=", "+", "-", "@")


def normalize_date(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    value = value.strip()
    return value if _DATE_RE.match(value) else None


def export_url(filters: Dict[str, Any]) -> str:
    query = {key: value for key, value in filters.items() if value not in (None, "")}
    return f"{EXPORT_PATH}?{urlencode(query)}" if query else EXPORT_PATH


def csv_safe(value: str) -> str:
    """Prefixes spreadsheet formula triggers so the cell is read as text."""
    stripped = value.lstrip()
    if stripped and stripped[0] in _FORMULA_PREFIXES:
        return "'" + value
    return value


def _cell(order: OrderInDB, field: str) -> str:
    value = getattr(order, field, None)
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def export_filename(merchant: Optional[str], extension: str, now: Optional[datetime] = None) -> str:
    safe_merchant = re.sub(r"[^A-Za-z0-9_\-]", "_", merchant or "all")
    return f"financial_report_{safe_merchant}_{(now or utcnow()).strftime('%Y%m%d_%H%M%S')}.{extension}"


def export_totals(orders: List[OrderInDB]) -> Dict[str, float]:
    total_revenue = round(sum(parse_amount(order.amount) for order in orders), 2)
    count = len(orders)
    return {
        "total_orders": count,
        "total_revenue": total_revenue,
        "average_order_value": round(total_revenue / count, 2) if count else 0.0,
    }


def build_xlsx(orders: List[OrderInDB]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Financial Report"
    sheet.append(REPORT_HEADINGS)
    for order in orders:
        sheet.append([_cell(order, field) for field in REPORT_FIELDS])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_csv(orders: List[OrderInDB], filters: Dict[str, Any], date_field: str) -> str:
    totals = export_totals(orders)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["Financial Report"])
    writer.writerow(["Generated At", utcnow().strftime("%Y-%m-%d %H:%M:%S")])
    writer.writerow(["Merchant Filter", filters.get("merchant") or "All"])
    writer.writerow(["Country Filter", filters.get("country") or "All"])
    writer.writerow(["City Filter", filters.get("city") or "All"])
    writer.writerow(["Agent Filter", filters.get("agent") or "remitted/remittted (default)"])
    writer.writerow(["Date Field", date_field])
    writer.writerow(["Start Date", filters.get("start_date") or "N/A"])
    writer.writerow(["End Date", filters.get("end_date") or "N/A"])
    writer.writerow(["Total Orders", totals["total_orders"]])
    writer.writerow(["Total Revenue", totals["total_revenue"]])
    writer.writerow(["Average Order Value", totals["average_order_value"]])
    writer.writerow([])
    writer.writerow(REPORT_HEADINGS)
    plain_fields = ("order_date", "delivery_date", "quantity", "amount")
    for order in orders:
        writer.writerow([
            _cell(order, field) if field in plain_fields else csv_safe(_cell(order, field))
            for field in REPORT_FIELDS
        ])
    return buffer.getvalue()


class ReportTaskService:
    """Report delivery workflow: match scheduled coded orders, mark Delivered, then remitted."""

    def __init__(self, report_repo: ReportTaskRepository, order_repo: OrderRepository):
        self.report_repo = report_repo
        self.order_repo = order_repo

    @staticmethod
    def _log_entry(event: str, details: str) -> Dict[str, str]:
        return {"time": iso(utcnow()), "event": event, "details": details}

    async def create(self, merchants: List[Dict[str, Any]], user_id: str) -> ReportTaskInDB:
        log = logger.bind(service="ReportTaskService", user_id=user_id)
        items: List[MerchantWorkflowItem] = []
        total_matched = 0
        for entry in merchants:
            merchant = str(entry.get("merchant") or "").strip()
            if not merchant:
                continue
            start_date = normalize_date(entry.get("start_date"))
            end_date = normalize_date(entry.get("end_date"))
            query: Dict[str, Any] = {
                "merchant": like(merchant),
                "status": iexact("scheduled", trim=True),
                "code": {"$nin": [None, ""]},
            }
            date_range = date_between(start_date, end_date)
            if date_range:
                query["order_date"] = date_range

            orders = await self.order_repo.list_by(query, limit=0)
            matched = [
                {
                    "id": str(order.id),
                    "order_no": order.order_no or "",
                    "code": order.code or "",
                    "status": order.status or "",
                    "order_date": order.order_date,
                }
                for order in orders
            ]
            total_matched += len(matched)
            items.append(MerchantWorkflowItem(
                merchant=merchant,
                start_date=start_date,
                end_date=end_date,
                matched_order_ids=[row["id"] for row in matched],
                matched_orders=matched,
                matched_count=len(matched),
            ))

        task = await self.report_repo.create(ReportTaskInDB(
            user_id=str(user_id),
            message="Step 1 ready: confirm to mark matched scheduled+coded orders as Delivered.",
            merchants=items,
            summary={"merchants_count": len(items), "total_matched_orders": total_matched},
            logs=[self._log_entry("task_created", f"Matched {total_matched} scheduled orders with code.")],
        ))
        log.info(f"Report workflow {task.id} created for {len(items)} merchant(s), {total_matched} order(s).")
        return task

    async def get(self, task_id: str, user_id: Optional[str] = None) -> Optional[ReportTaskInDB]:
        task = await self.report_repo.get_by_id(task_id)
        if task is None or (user_id is not None and task.user_id != str(user_id)):
            return None
        return task

    async def confirm(self, task_id: str, user_id: Optional[str] = None) -> Optional[ReportTaskInDB]:
        """Advances the workflow by one step and returns its new state."""
        task = await self.get(task_id, user_id)
        if task is None:
            return None

        order_ids = list(dict.fromkeys(
            ObjectId(order_id)
            for item in task.merchants
            for order_id in item.matched_order_ids
            if ObjectId.is_valid(order_id)
        ))
        changes: Dict[str, Any] = {}
        logs = list(task.logs)

        if task.current_step == "confirm_delivery":
            affected = 0
            if order_ids:
                affected = await self.order_repo.update_many({"_id": {"$in": order_ids}}, {"status": "Delivered"})
            changes = {
                "current_step": "confirm_remitted",
                "status": "waiting_confirmation",
                "confirmation_required": True,
                "message": "Step 2 ready: confirm to mark agent as remitted for delivered orders.",
            }
            logs.append(self._log_entry("status_marked_delivered", f"Marked {affected} orders as Delivered."))
        elif task.current_step == "confirm_remitted":
            affected = 0
            if order_ids:
                affected = await self.order_repo.update_many(
                    {"_id": {"$in": order_ids}, "status": iexact("delivered", trim=True)},
                    {"agent": "remitted"},
                )
            changes = {
                "current_step": "completed",
                "status": "completed",
                "confirmation_required": False,
                "message": "Task completed. You can now download reports per merchant.",
                "report_links": self.report_links(task.merchants),
            }
            logs.append(self._log_entry("agent_marked_remitted", f"Marked {affected} orders as remitted."))
        else:
            changes = {"message": "Task is already completed."}

        changes["logs"] = logs
        return await self.report_repo.update(task.id, changes)

    @staticmethod
    def report_links(merchants: List[MerchantWorkflowItem]) -> List[Dict[str, str]]:
        links = []
        for item in merchants:
            merchant = item.merchant.strip()
            if not merchant:
                continue
            url = export_url({
                "merchant": merchant,
                "start_date": item.start_date,
                "end_date": item.end_date,
                "date_field": "delivery_date",
            })
            links.append({"merchant": merchant, "url": url})
        return links


def workflow_payload(task: ReportTaskInDB, base_path: Optional[str] = None) -> Dict[str, Any]:
    """Workflow state as returned to clients, with the URLs to inspect and confirm it."""
    base = (base_path if base_path is not None else settings.API_V1_STR).rstrip("/")
    payload = to_public(task)
    payload["type"] = "task_workflow"
    payload["confirm_url"] = f"{base}/report-tasks/{task.id}/confirm"
    payload["task_url"] = f"{base}/report-tasks/{task.id}"
    return payload


async def get_report_task_service(
    report_repo: ReportTaskRepository = Depends(get_report_task_repository),
    order_repo: OrderRepository = Depends(get_order_repository),
) -> ReportTaskService:
    return ReportTaskService(report_repo, order_repo)
