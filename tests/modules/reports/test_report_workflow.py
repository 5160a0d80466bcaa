# tests/modules/reports/test_report_workflow.py
import csv
import io

import pytest
from openpyxl import load_workbook

from opsconsole.modules.orders.repository import OrderRepository
from opsconsole.modules.reports.models import REPORT_HEADINGS
from opsconsole.modules.reports.repository import ReportTaskRepository
from opsconsole.modules.reports.services import ReportTaskService, csv_safe, export_filename, export_url
from opsconsole.tools.actions import ReportTools

pytestmark = pytest.mark.asyncio


async def seed(db_client):
    repo = OrderRepository(db_client)
    rows = [
        {"order_no": "KH-1", "merchant": "Kitchen Hub", "status": "Scheduled", "code": "C1", "order_date": "2026-03-02",
         "amount": 1000, "agent": "John"},
        {"order_no": "KH-2", "merchant": "kitchen hub", "status": "scheduled ", "code": "C2", "order_date": "2026-03-09",
         "amount": 2000, "agent": "John"},
        {"order_no": "KH-3", "merchant": "Kitchen Hub", "status": "Scheduled", "code": "", "order_date": "2026-03-03",
         "amount": 500},
        {"order_no": "HB-1", "merchant": "Home Basics", "status": "Scheduled", "code": "C9", "order_date": "2026-03-04",
         "amount": 700},
    ]
    for row in rows:
        await repo.collection.insert_one(dict(row))
    return repo


@pytest.fixture
def report_service(db_client) -> ReportTaskService:
    return ReportTaskService(ReportTaskRepository(db_client), OrderRepository(db_client))


async def test_workflow_moves_through_delivery_and_remittance(report_service, db_client):
    orders = await seed(db_client)

    task = await report_service.create(
        [{"merchant": "kitchen", "start_date": "2026-03-01", "end_date": "2026-03-05"}, {"merchant": "  "}], "u1"
    )
    assert task.current_step == "confirm_delivery"
    assert task.summary == {"merchants_count": 1, "total_matched_orders": 1}
    assert [row["order_no"] for row in task.merchants[0].matched_orders] == ["KH-1"]

    delivered = await report_service.confirm(task.id)
    assert delivered.current_step == "confirm_remitted"
    assert (await orders.get_by_order_no("KH-1")).status == "Delivered"
    assert (await orders.get_by_order_no("KH-2")).status == "scheduled "

    completed = await report_service.confirm(task.id)
    assert completed.status == "completed"
    assert completed.confirmation_required is False
    assert (await orders.get_by_order_no("KH-1")).agent == "remitted"
    assert completed.report_links == [{
        "merchant": "kitchen",
        "url": "/api/v1/reports/financial/export?merchant=kitchen&start_date=2026-03-01"
               "&end_date=2026-03-05&date_field=delivery_date",
    }]
    assert [entry["event"] for entry in completed.logs] == [
        "task_created", "status_marked_delivered", "agent_marked_remitted",
    ]

    again = await report_service.confirm(task.id)
    assert again.message == "Task is already completed."


async def test_report_tools_validate_and_show_status(report_service, db_client):
    await seed(db_client)
    tools = ReportTools(report_service, "u1")

    assert (await tools.create_report_task({"merchants": []}))["message"] == "The merchants field is required."
    bad_date = await tools.create_report_task({"merchants": [{"merchant": "Kitchen Hub", "start_date": "03/01/2026"}]})
    assert bad_date["message"] == "The merchants.0.start_date field must match the format Y-m-d."

    created = await tools.create_report_task({"merchants": [{"merchant": "Home Basics"}]})
    assert created["type"] == "task_workflow"
    assert created["confirm_url"] == f"/api/v1/report-tasks/{created['id']}/confirm"

    status = await tools.get_report_task_status({"task_id": created["id"]})
    assert status["summary"]["total_matched_orders"] == 1

    assert (await ReportTools(report_service, "u2").get_report_task_status({"task_id": created["id"]}))["message"] == (
        "Task not found."
    )


async def test_export_helpers():
    assert csv_safe("=SUM(A1:A2)") == "'=SUM(A1:A2)"
    assert csv_safe("Kitchen Hub") == "Kitchen Hub"
    assert export_url({"merchant": None}) == "/api/v1/reports/financial/export"
    assert export_filename("Kitchen Hub/West", "csv").startswith("financial_report_Kitchen_Hub_West_")


async def test_export_endpoint_csv_and_xlsx(authenticated_client, db_client):
    repo = OrderRepository(db_client)
    rows = [
        {"order_no": "RD-1", "merchant": "Kitchen Hub", "status": "Delivered", "agent": "Remitted",
         "order_date": "2026-03-01", "amount": 3500, "client_name": "=cmd()"},
        {"order_no": "RD-2", "merchant": "Kitchen Hub", "status": "Delivered", "agent": "remittted",
         "order_date": "2026-03-10", "amount": "1,500"},
        {"order_no": "RD-3", "merchant": "Kitchen Hub", "status": "Pending", "agent": "Remitted",
         "order_date": "2026-03-11", "amount": 900},
    ]
    for row in rows:
        await repo.collection.insert_one(dict(row))

    response = await authenticated_client.get(
        "/api/v1/reports/financial/export", params={"merchant": "kitchen", "format": "csv"}
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="financial_report_kitchen_' in response.headers["content-disposition"]
    lines = list(csv.reader(io.StringIO(response.text)))
    assert ["Total Orders", "2"] in lines
    assert ["Total Revenue", "5000.0"] in lines
    table = lines[lines.index(REPORT_HEADINGS) + 1:]
    assert [row[0] for row in table] == ["RD-2", "RD-1"]
    assert table[1][4] == "'=cmd()"

    xlsx = await authenticated_client.get("/api/v1/reports/financial/export", params={"start_date": "2026-03-05"})
    sheet = load_workbook(io.BytesIO(xlsx.content)).active
    values = list(sheet.values)
    assert list(values[0]) == REPORT_HEADINGS
    assert [row[0] for row in values[1:]] == ["RD-2"]


async def test_export_rejects_malformed_dates(authenticated_client):
    response = await authenticated_client.get("/api/v1/reports/financial/export", params={"start_date": "March"})
    assert response.status_code == 422


async def test_report_task_endpoints(authenticated_client, report_service, db_client):
    await seed(db_client)
    task = await report_service.create([{"merchant": "Home Basics"}], "someone-else")

    shown = await authenticated_client.get(f"/api/v1/report-tasks/{task.id}")
    assert shown.status_code == 200
    assert shown.json()["task_url"] == f"/api/v1/report-tasks/{task.id}"

    confirmed = await authenticated_client.post(f"/api/v1/report-tasks/{task.id}/confirm")
    assert confirmed.json()["current_step"] == "confirm_remitted"

    missing = await authenticated_client.post("/api/v1/report-tasks/nope/confirm")
    assert missing.status_code == 404
    assert missing.json() == {"message": "Task not found."}
