# opsconsole/modules/orders/services.py

import calendar
import re
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from loguru import logger

from opsconsole.core.clock import resolve_timezone
from opsconsole.core.config import settings
from opsconsole.models.api_common import to_public
from .models import ORDER_WRITABLE_FIELDS, OrderInDB, parse_amount
from .repository import OrderRepository, date_between, financial_query, iexact, like, status_in

EXACT_FILTERS = ("status", "agent", "country")
LIKE_FILTERS = ("client_name", "merchant", "phone", "code", "alt_no", "city")
REQUIRED_ON_CREATE = ("order_no", "client_name", "product_name", "amount")

_TRUE_STRINGS = {"1", "true", "on", "yes"}
_FALSE_STRINGS = {"0", "false", "off", "no", ""}
_INTEGER_RE = re.compile(r"^\s*-?\d+\s*$")
MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def parse_bool(value: Any) -> Optional[bool]:
    """Boolean-like input to bool, or None when it is not recognizable."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _int_arg(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value).strip())
        return True
    except ValueError:
        return False


def _group(orders: List[OrderInDB], key) -> "OrderedDict[str, List[OrderInDB]]":
    groups: "OrderedDict[str, List[OrderInDB]]" = OrderedDict()
    for order in orders:
        groups.setdefault(key(order), []).append(order)
    return groups


def _status_key(order: OrderInDB) -> str:
    return (order.status or "unknown").strip().lower() or "unknown"


def product_breakdown(orders: List[OrderInDB], amounts: List[float], limit: int = 8) -> List[Dict[str, Any]]:
    """Orders and revenue per product, busiest products first."""
    products: "OrderedDict[str, List[float]]" = OrderedDict()
    for order, amount in zip(orders, amounts):
        products.setdefault((order.product_name or "Unknown").strip(), []).append(amount)
    return sorted(
        (
            {
                "product_name": name,
                "order_count": len(values),
                "total_revenue": round(sum(values), 2),
                "average_price": round(sum(values) / len(values), 2),
            }
            for name, values in products.items()
        ),
        key=lambda row: row["order_count"],
        reverse=True,
    )[:limit]


def city_breakdown(orders: List[OrderInDB], limit: int = 8) -> List[Dict[str, Any]]:
    groups = _group(orders, lambda order: (order.city or "Unknown").strip())
    return sorted(
        ({"city": name, "order_count": len(group)} for name, group in groups.items()),
        key=lambda row: row["order_count"],
        reverse=True,
    )[:limit]


def status_breakdown(orders: List[OrderInDB]) -> List[Dict[str, Any]]:
    groups = _group(orders, _status_key)
    return sorted(
        ({"status": name, "order_count": len(group)} for name, group in groups.items()),
        key=lambda row: row["order_count"],
        reverse=True,
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _string_error(args: Dict[str, Any], *fields: str) -> Optional[str]:
    for field in fields:
        if not _is_blank(args.get(field)) and not isinstance(args[field], str):
            return f"The {field} field must be a string."
    return None


def _date_error(args: Dict[str, Any], *fields: str, strict: bool = False) -> Optional[str]:
    """Checks ``YYYY-MM-DD`` dates; ``strict`` rejects trailing time parts."""
    for field in fields:
        value = args.get(field)
        if _is_blank(value):
            continue
        text = str(value).strip()
        try:
            date.fromisoformat(text if strict else text[:10])
        except ValueError:
            if strict:
                return f"The {field} field must match the format Y-m-d."
            return f"The {field} field must be a valid date."
    return None


def _limit_error(args: Dict[str, Any]) -> Optional[str]:
    value = args.get("limit")
    if _is_blank(value):
        return None
    if isinstance(value, bool) or not (isinstance(value, int) or _INTEGER_RE.match(str(value))):
        return "The limit field must be an integer."
    if int(value) < 1:
        return "The limit field must be at least 1."
    if int(value) > 200:
        return "The limit field must not be greater than 200."
    return None


def _day(value: Any) -> str:
    return str(value).strip()[:10]


def _range_error(args: Dict[str, Any]) -> Optional[str]:
    start, end = args.get("start_date"), args.get("end_date")
    if not _is_blank(start) and not _is_blank(end) and _day(start) > _day(end):
        return "start_date must be before or equal to end_date."
    return None


def _listing_limit(args: Dict[str, Any], default: int) -> int:
    return min(200, max(1, _int_arg(args.get("limit"), default) or default))


def _today() -> str:
    return datetime.now(ZoneInfo(resolve_timezone(None))).date().isoformat()


def _month_range(month: str) -> Tuple[str, str]:
    year, month_number = (int(part) for part in month.split("-"))
    last_day = calendar.monthrange(year, month_number)[1]
    return f"{month}-01", f"{month}-{last_day:02d}"


def _report_filters(args: Dict[str, Any]) -> Dict[str, Any]:
    conditions: Dict[str, Any] = {}
    if args.get("merchant"):
        conditions["merchant"] = like(args["merchant"])
    if args.get("country"):
        conditions["country"] = iexact(args["country"])
    if args.get("city"):
        conditions["city"] = like(args["city"])
    return conditions


class OrderService:
    """Order tools: listing, lookup, writes and the delivered-revenue report."""

    def __init__(self, order_repo: OrderRepository):
        self.order_repo = order_repo
        self.log = logger.bind(service="OrderService")

    async def _find(self, args: Dict[str, Any]) -> Optional[OrderInDB]:
        if args.get("id"):
            return await self.order_repo.get_by_id(args["id"])
        return await self.order_repo.get_by_order_no(args["order_no"])

    async def list_orders(self, args: Dict[str, Any]) -> Dict[str, Any]:
        page = max(1, _int_arg(args.get("page"), 1))
        per_page = min(50, max(5, _int_arg(args.get("per_page"), 15)))

        conditions: List[Dict[str, Any]] = []
        for field in EXACT_FILTERS:
            if args.get(field):
                conditions.append({field: iexact(args[field])})
        for field in LIKE_FILTERS:
            if args.get(field):
                conditions.append({field: like(args[field])})
        if "code_is_empty" in args:
            code_is_empty = parse_bool(args["code_is_empty"])
            if code_is_empty is True:
                conditions.append({"code": {"$in": [None, ""]}})
            elif code_is_empty is False:
                conditions.append({"code": {"$nin": [None, ""]}})
        if args.get("search"):
            conditions.append(OrderRepository.search_clause(args["search"]))

        query: Dict[str, Any] = {"$and": conditions} if conditions else {}
        orders, total, last_page = await self.order_repo.paginate(query, page, per_page)
        return {
            "type": "orders_table",
            "total": total,
            "current_page": page,
            "last_page": last_page,
            "per_page": per_page,
            "orders": [to_public(order) for order in orders],
        }

    async def get_order(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if not args.get("id") and not args.get("order_no"):
            return {"type": "error", "message": "Provide id or order_no."}
        order = await self._find(args)
        if order is None:
            return {"type": "error", "message": "Order not found."}
        return {"type": "order_detail", "order": to_public(order)}

    async def _create_error(self, args: Dict[str, Any]) -> Optional[str]:
        for field in REQUIRED_ON_CREATE:
            value = args.get(field)
            if value is None or (isinstance(value, str) and not value.strip()):
                return f"The {field} field is required."
        for field in ("order_no", "client_name", "product_name"):
            if not isinstance(args[field], (str, int)) or isinstance(args[field], bool):
                return f"The {field} field must be a string."
        if not _is_numeric(args["amount"]):
            return "The amount field must be a number."
        if await self.order_repo.order_no_taken(args["order_no"]):
            return "The order_no has already been taken."
        return None

    async def create_order(self, args: Dict[str, Any]) -> Dict[str, Any]:
        error = await self._create_error(args)
        if error:
            return {"type": "error", "message": error}

        payload = {key: value for key, value in args.items() if key in ORDER_WRITABLE_FIELDS}
        try:
            order = await self.order_repo.create(OrderInDB(**payload))
        except (ValueError, RuntimeError) as e:
            self.log.error(f"create_order failed: {e}")
            return {"type": "error", "message": f"DB error: {e}"}

        self.log.info(f"Order {order.order_no} created via tool call.")
        return {
            "type": "order_created",
            "message": f"Order #{order.order_no} created successfully.",
            "order": to_public(order),
        }

    async def edit_order(self, args: Dict[str, Any]) -> Dict[str, Any]:
        if not args.get("id") and not args.get("order_no"):
            return {"type": "error", "message": "Provide id or order_no to identify the order."}
        order = await self._find(args)
        if order is None:
            return {"type": "error", "message": "Order not found."}

        changes = {
            key: value for key, value in args.items()
            if key in ORDER_WRITABLE_FIELDS and key != "order_no"
        }
        try:
            updated = await self.order_repo.update(order.id, changes)
        except (ValueError, RuntimeError) as e:
            self.log.error(f"edit_order failed for {order.order_no}: {e}")
            return {"type": "error", "message": f"DB error: {e}"}

        return {
            "type": "order_updated",
            "message": f"Order #{order.order_no} updated successfully.",
            "order": to_public(updated or order),
        }

    async def financial_report(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = financial_query(
            merchant=args.get("merchant"),
            country=args.get("country"),
            city=args.get("city"),
            agent=args.get("agent"),
            start_date=args.get("start_date"),
            end_date=args.get("end_date"),
        )
        orders = await self.order_repo.list_by(query, limit=0, sort=[("order_date", -1)])
        if not orders:
            return {
                "type": "error",
                "message": "No delivered + remitted orders found for the provided filters.",
            }

        amounts = [parse_amount(order.amount) for order in orders]
        total_revenue = sum(amounts)
        order_count = len(orders)

        limit = min(200, max(1, _int_arg(args.get("limit"), 50) or 50))
        listed = [to_public(order) for order in orders[:limit]]
        order_dates = [order.order_date for order in orders if order.order_date]

        export_filters = {
            key: args.get(key)
            for key in ("merchant", "country", "city", "start_date", "end_date", "agent")
            if args.get(key) not in (None, "")
        }
        excel_url = f"{settings.API_V1_STR}/reports/financial/export"
        if export_filters:
            excel_url += "?" + urlencode(export_filters)

        return {
            "type": "financial_report",
            "merchant": args.get("merchant"),
            "filters": {
                "country": args.get("country"),
                "city": args.get("city"),
                "start_date": args.get("start_date"),
                "end_date": args.get("end_date"),
                "agent": args.get("agent") or "remitted (default)",
            },
            "status": "Delivered",
            "agent_scope": str(args["agent"]) if args.get("agent") else "remitted/remittted (default)",
            "total_orders": order_count,
            "total_revenue": round(total_revenue, 2),
            "average_order_value": round(total_revenue / order_count, 2),
            "date_range": {
                "earliest_order_date": min(order_dates) if order_dates else None,
                "latest_order_date": max(order_dates) if order_dates else None,
            },
            "product_breakdown": product_breakdown(orders, amounts),
            "city_breakdown": city_breakdown(orders),
            "listed_orders_count": len(listed),
            "orders": listed,
            "excel_download_url": excel_url,
        }

    async def call_center_daily_report(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Scheduled or delivered orders carrying a payment code, by delivery day."""
        error = (
            _string_error(args, "merchant", "country", "city")
            or _date_error(args, "start_date", "end_date")
            or _limit_error(args)
        )
        if error:
            return {"type": "error", "message": error}

        start_date = _day(args["start_date"]) if not _is_blank(args.get("start_date")) else _today()
        end_date = _day(args["end_date"]) if not _is_blank(args.get("end_date")) else start_date
        if start_date > end_date:
            return {"type": "error", "message": "start_date must be before or equal to end_date."}

        query = _report_filters(args)
        query["status"] = status_in("scheduled", "delivered")
        query["code"] = {"$ne": None}
        query["delivery_date"] = date_between(start_date, end_date)
        orders = await self.order_repo.list_by(query, limit=0, sort=[("delivery_date", -1)])
        if not orders:
            return {
                "type": "error",
                "message": "No scheduled or delivered orders with code found for the provided filters.",
            }

        amounts = [parse_amount(order.amount) for order in orders]
        total_revenue = sum(amounts)
        listed = [
            {"order_no": order.order_no, "mpesa_code": order.code}
            for order in orders[: _listing_limit(args, 50)]
        ]
        logger.bind(service="orders").info(
            "Call center daily report {}..{}: {} orders", start_date, end_date, len(orders)
        )
        return {
            "type": "call_center_daily_report",
            "merchant": args.get("merchant"),
            "statuses": ["scheduled", "delivered"],
            "filters": {
                "country": args.get("country"),
                "city": args.get("city"),
                "start_date": start_date,
                "end_date": end_date,
                "date_field": "delivery_date",
            },
            "total_orders": len(orders),
            "total_revenue": round(total_revenue, 2),
            "average_order_value": round(total_revenue / len(orders), 2),
            "product_breakdown": product_breakdown(orders, amounts),
            "city_breakdown": city_breakdown(orders),
            "listed_orders_count": len(listed),
            "orders": listed,
        }

    async def call_center_monthly_report(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Orders for a month (or explicit range), optionally per call center agent."""
        month = args.get("month")
        if not _is_blank(month) and not (isinstance(month, str) and MONTH_RE.match(month.strip())):
            return {"type": "error", "message": "The month field must match the format Y-m."}
        error = (
            _string_error(args, "merchant", "cc_email", "country", "city")
            or _date_error(args, "start_date", "end_date")
            or _limit_error(args)
            or _range_error(args)
        )
        if error:
            return {"type": "error", "message": error}
        if all(_is_blank(args.get(key)) for key in ("month", "start_date", "end_date")):
            return {"type": "error", "message": "Provide month (YYYY-MM) or a start_date/end_date range."}

        query = _report_filters(args)
        date_ranges = []
        if not _is_blank(month):
            date_ranges.append(date_between(*_month_range(month.strip())))
        if not _is_blank(args.get("start_date")) or not _is_blank(args.get("end_date")):
            date_ranges.append(date_between(args.get("start_date"), args.get("end_date")))
        if len(date_ranges) == 1:
            query["order_date"] = date_ranges[0]
        else:
            query["$and"] = [{"order_date": condition} for condition in date_ranges]
        if not _is_blank(args.get("cc_email")):
            query["cc_email"] = iexact(args["cc_email"], trim=True)

        orders = await self.order_repo.list_by(query, limit=0, sort=[("order_date", -1)])
        if not orders:
            return {"type": "error", "message": "No orders found for the provided monthly filters."}

        amounts = [parse_amount(order.amount) for order in orders]
        total_revenue = sum(amounts)
        listed = [
            {
                "order_no": order.order_no,
                "client_name": order.client_name,
                "status": order.status,
                "code": order.code,
                "city": order.city,
                "cc_email": order.cc_email,
            }
            for order in orders[: _listing_limit(args, 50)]
        ]
        return {
            "type": "call_center_monthly_report",
            "merchant": args.get("merchant"),
            "filters": {
                "month": month,
                "cc_email": args.get("cc_email"),
                "country": args.get("country"),
                "city": args.get("city"),
                "start_date": args.get("start_date"),
                "end_date": args.get("end_date"),
            },
            "total_orders": len(orders),
            "total_revenue": round(total_revenue, 2),
            "average_order_value": round(total_revenue / len(orders), 2),
            "status_breakdown": status_breakdown(orders),
            "product_breakdown": product_breakdown(orders, amounts),
            "city_breakdown": city_breakdown(orders),
            "listed_orders_count": len(listed),
            "orders": listed,
        }

    async def merchant_report(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Per-merchant revenue for one status, with product and instruction summaries."""
        if _is_blank(args.get("status")):
            return {"type": "error", "message": "The status field is required."}
        error = (
            _string_error(args, "status", "merchant", "country", "city", "agent")
            or _date_error(args, "start_date", "end_date", strict=True)
            or _limit_error(args)
        )
        if not error and not _is_blank(args.get("start_date")) and not _is_blank(args.get("end_date")):
            if str(args["end_date"]).strip() < str(args["start_date"]).strip():
                error = "The end_date field must be a date after or equal to start_date."
        if error:
            return {"type": "error", "message": error}

        status = args["status"].strip().lower()
        filters = {
            key: args[key]
            for key in ("status", "merchant", "start_date", "end_date", "country", "city", "agent")
            if not _is_blank(args.get(key))
        }
        query: Dict[str, Any] = {"status": iexact(status, trim=True)}
        for field in ("merchant", "country", "city", "agent"):
            if field in filters:
                query[field] = like(filters[field])
        if "start_date" in filters or "end_date" in filters:
            query["order_date"] = date_between(filters.get("start_date"), filters.get("end_date"))

        orders = await self.order_repo.list_by(query, limit=0)
        if not orders:
            return {
                "type": "merchant_report",
                "empty": True,
                "message": f"No '{status}' orders matched the merchant report filters.",
                "filters": filters,
            }

        total_revenue = sum(parse_amount(order.amount) for order in orders)
        total_quantity = sum(parse_amount(order.quantity) for order in orders)

        def totals(group: List[OrderInDB]) -> Tuple[float, float]:
            return (
                sum(parse_amount(order.amount) for order in group),
                sum(parse_amount(order.quantity) for order in group),
            )

        by_merchant = []
        for merchant, group in _group(orders, lambda order: (order.merchant or "Unknown").strip()).items():
            revenue, quantity = totals(group)
            by_merchant.append(
                {
                    "merchant": merchant,
                    "order_count": len(group),
                    "total_quantity": round(quantity, 2),
                    "total_revenue": round(revenue, 2),
                    "average_order_value": round(revenue / len(group), 2),
                    "revenue_share_pct": round(revenue / total_revenue * 100, 2) if total_revenue > 0 else 0.0,
                }
            )
        by_merchant.sort(key=lambda row: row["total_revenue"], reverse=True)
        by_merchant = by_merchant[: _listing_limit(args, 20)]

        top_products = []
        for product, group in _group(orders, lambda order: (order.product_name or "Unknown").strip()).items():
            revenue, quantity = totals(group)
            top_products.append(
                {
                    "product_name": product,
                    "order_count": len(group),
                    "total_quantity": round(quantity, 2),
                    "total_revenue": round(revenue, 2),
                }
            )
        top_products.sort(key=lambda row: row["total_revenue"], reverse=True)

        instructions = [" ".join((order.instructions or "").split())[:120] for order in orders]
        provided = [text for text in instructions if text]
        instruction_counts: "OrderedDict[str, int]" = OrderedDict()
        for text in provided:
            instruction_counts[text] = instruction_counts.get(text, 0) + 1
        top_instructions = sorted(instruction_counts.items(), key=lambda item: item[1], reverse=True)[:10]

        top_merchant = by_merchant[0] if by_merchant else {}
        return {
            "type": "merchant_report",
            "empty": False,
            "filters": filters,
            "summary": {
                "total_orders": len(orders),
                "total_quantity": round(total_quantity, 2),
                "total_revenue": round(total_revenue, 2),
                "merchant_count": len(by_merchant),
                "top_merchant": top_merchant.get("merchant"),
                "top_merchant_revenue": top_merchant.get("total_revenue"),
            },
            "by_merchant": by_merchant,
            "top_products": top_products[:10],
            "status_breakdown": status_breakdown(orders),
            "instructions_analysis": {
                "orders_with_instructions": len(provided),
                "orders_without_instructions": len(orders) - len(provided),
                "instructions_coverage_pct": round(len(provided) / len(orders) * 100, 2),
                "top_instructions": [{"instruction": text, "count": count} for text, count in top_instructions],
            },
        }
