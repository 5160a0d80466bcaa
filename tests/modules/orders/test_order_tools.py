# tests/modules/orders/test_order_tools.py
import pytest

from opsconsole.modules.orders.repository import OrderRepository, financial_query
from opsconsole.modules.orders.services import OrderService, parse_bool

pytestmark = pytest.mark.asyncio


async def seed_orders(repo: OrderRepository):
    rows = [
        {"order_no": "RD-1001", "order_date": "2026-03-01", "client_name": "Amina Otieno", "product_name": "Blender",
         "amount": 3500, "status": "Delivered", "agent": "Remitted", "merchant": "Kitchen Hub", "city": "Nairobi",
         "country": "Kenya", "phone": "0712345678"},
        {"order_no": "RD-1002", "order_date": "2026-03-05", "client_name": "Brian Mwangi", "product_name": "Kettle",
         "amount": "KES 1,500", "status": "delivered ", "agent": "remittted", "merchant": "kitchen hub", "city": "Mombasa",
         "country": "Kenya", "code": "X1"},
        {"order_no": "RD-1003", "order_date": "2026-03-07", "client_name": "Carol Njeri", "product_name": "Blender",
         "amount": 3600, "status": "Pending", "agent": "Remitted", "merchant": "Kitchen Hub", "city": "Nairobi",
         "country": "Kenya"},
        {"order_no": "RD-1004", "order_date": "2026-04-02", "client_name": "Daudi Juma", "product_name": "Iron",
         "amount": 2000, "status": "Delivered", "agent": "John", "merchant": "Home Basics", "city": "Dar es Salaam",
         "country": "Tanzania"},
    ]
    for row in rows:
        await repo.collection.insert_one(dict(row))


@pytest.fixture
def order_service(db_client) -> OrderService:
    return OrderService(OrderRepository(db_client))


async def test_list_orders_paginates_and_sorts_newest_first(order_service, db_client):
    await seed_orders(OrderRepository(db_client))

    result = await order_service.list_orders({"per_page": 2})

    assert result["type"] == "orders_table"
    assert result["total"] == 4
    assert result["per_page"] == 5
    assert result["last_page"] == 1
    assert [order["order_no"] for order in result["orders"]][:2] == ["RD-1004", "RD-1003"]


async def test_list_orders_filters_and_free_search(order_service, db_client):
    await seed_orders(OrderRepository(db_client))

    by_merchant = await order_service.list_orders({"merchant": "kitchen"})
    assert by_merchant["total"] == 3

    by_country = await order_service.list_orders({"country": "tanzania"})
    assert [order["order_no"] for order in by_country["orders"]] == ["RD-1004"]

    searched = await order_service.list_orders({"search": "njeri"})
    assert [order["order_no"] for order in searched["orders"]] == ["RD-1003"]

    without_code = await order_service.list_orders({"code_is_empty": "true"})
    assert "RD-1002" not in [order["order_no"] for order in without_code["orders"]]


async def test_get_order_requires_identifier_and_reports_missing(order_service, db_client):
    await seed_orders(OrderRepository(db_client))

    assert (await order_service.get_order({}))["message"] == "Provide id or order_no."
    assert (await order_service.get_order({"order_no": "NOPE"}))["message"] == "Order not found."

    found = await order_service.get_order({"order_no": "RD-1001"})
    assert found["type"] == "order_detail"
    assert found["order"]["client_name"] == "Amina Otieno"


async def test_create_order_validates_and_enforces_unique_order_no(order_service, db_client):
    await seed_orders(OrderRepository(db_client))

    missing = await order_service.create_order({"order_no": "RD-2000", "client_name": "X", "product_name": "Y"})
    assert missing == {"type": "error", "message": "The amount field is required."}

    not_numeric = await order_service.create_order(
        {"order_no": "RD-2000", "client_name": "X", "product_name": "Y", "amount": "lots"}
    )
    assert not_numeric["message"] == "The amount field must be a number."

    taken = await order_service.create_order(
        {"order_no": "RD-1001", "client_name": "X", "product_name": "Y", "amount": 10}
    )
    assert taken["message"] == "The order_no has already been taken."

    created = await order_service.create_order(
        {"order_no": "RD-2000", "client_name": "Esther", "product_name": "Toaster", "amount": 4200, "confirmed": True}
    )
    assert created["type"] == "order_created"
    assert created["message"] == "Order #RD-2000 created successfully."
    assert "confirmed" not in created["order"]


async def test_edit_order_never_changes_order_no(order_service, db_client):
    await seed_orders(OrderRepository(db_client))

    result = await order_service.edit_order({"order_no": "RD-1003", "status": "Delivered", "confirmed": True})

    assert result["type"] == "order_updated"
    assert result["order"]["status"] == "Delivered"
    assert result["order"]["order_no"] == "RD-1003"


async def test_financial_report_counts_delivered_remitted_orders(order_service, db_client):
    await seed_orders(OrderRepository(db_client))

    report = await order_service.financial_report({"merchant": "kitchen"})

    assert report["type"] == "financial_report"
    assert report["total_orders"] == 2
    assert report["total_revenue"] == 5000
    assert report["average_order_value"] == 2500
    assert report["excel_download_url"] == "/api/v1/reports/financial/export?merchant=kitchen"


async def test_financial_report_with_explicit_agent_and_no_match(order_service, db_client):
    await seed_orders(OrderRepository(db_client))

    by_agent = await order_service.financial_report({"agent": "john"})
    assert by_agent["total_orders"] == 1

    empty = await order_service.financial_report({"start_date": "2027-01-01"})
    assert empty == {"type": "error", "message": "No delivered + remitted orders found for the provided filters."}


async def test_financial_query_date_range_is_inclusive():
    query = financial_query(start_date="2026-03-01", end_date="2026-03-05")
    assert query["order_date"] == {"$gte": "2026-03-01", "$lt": "2026-03-06"}


async def test_parse_bool_accepts_common_spellings():
    assert parse_bool("yes") is True
    assert parse_bool("0") is False
    assert parse_bool("maybe") is None
