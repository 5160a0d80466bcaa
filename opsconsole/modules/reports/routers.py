# opsconsole/modules/reports/routers.py

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import JSONResponse, Response
from loguru import logger

from opsconsole.core.security import CurrentUser
from opsconsole.modules.orders.repository import OrderRepository, financial_query, get_order_repository
from .services import (
    ReportTaskService,
    build_csv,
    build_xlsx,
    export_filename,
    get_report_task_service,
    workflow_payload,
)

reports_router = APIRouter()
report_tasks_router = APIRouter()

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@reports_router.get(
    "/financial/export",
    summary="Download delivered + remitted orders as XLSX or CSV",
    tags=["Reports"],
)
async def export_financial_report(
    current_user: CurrentUser,
    merchant: Optional[str] = Query(None, max_length=255),
    country: Optional[str] = Query(None, max_length=255),
    city: Optional[str] = Query(None, max_length=255),
    agent: Optional[str] = Query(None, max_length=255),
    start_date: Optional[str] = Query(None, pattern=DATE_PATTERN),
    end_date: Optional[str] = Query(None, pattern=DATE_PATTERN),
    date_field: Literal["order_date", "delivery_date"] = Query("order_date"),
    export_format: Literal["xlsx", "csv"] = Query("xlsx", alias="format"),
    order_repo: OrderRepository = Depends(get_order_repository),
):
    log = logger.bind(user_id=str(current_user.id), endpoint="reports.export")
    filters = {
        "merchant": merchant,
        "country": country,
        "city": city,
        "agent": agent,
        "start_date": start_date,
        "end_date": end_date,
    }
    query = financial_query(date_field=date_field, **filters)
    orders = await order_repo.list_by(query, limit=0, sort=[(date_field, -1)])
    filename = export_filename(merchant, export_format)
    log.info(f"Exporting {len(orders)} order(s) as {export_format} ({filename}).")

    if export_format == "csv":
        content = build_csv(orders, filters, date_field)
        media_type = "text/csv; charset=UTF-8"
    else:
        content = build_xlsx(orders)
        media_type = XLSX_MEDIA_TYPE
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@report_tasks_router.get(
    "/{task_id}",
    summary="Get a report delivery workflow",
    tags=["Reports"],
)
async def show_report_task(
    current_user: CurrentUser,
    task_id: str = Path(...),
    report_service: ReportTaskService = Depends(get_report_task_service),
):
    task = await report_service.get(task_id)
    if task is None:
        return JSONResponse(status_code=404, content={"message": "Task not found."})
    return workflow_payload(task)


@report_tasks_router.post(
    "/{task_id}/confirm",
    summary="Confirm the next step of a report delivery workflow",
    tags=["Reports"],
)
async def confirm_report_task(
    current_user: CurrentUser,
    task_id: str = Path(...),
    report_service: ReportTaskService = Depends(get_report_task_service),
):
    log = logger.bind(user_id=str(current_user.id), report_task_id=task_id)
    task = await report_service.confirm(task_id)
    if task is None:
        return JSONResponse(status_code=404, content={"message": "Task not found."})
    log.info(f"Report workflow advanced to '{task.current_step}'.")
    return workflow_payload(task)
