# opsconsole/modules/orders/repository.py

import math
import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends
from loguru import logger

from opsconsole.core.database import get_database
from opsconsole.core.repository import BaseRepository
from .models import OrderInDB, ORDER_SEARCH_FIELDS

REMITTED_AGENTS = ("remitted", "remittted")


def like(value: str) -> Dict[str, str]:
    """Case-insensitive substring match, the Mongo form of SQL ``LIKE %v%``."""
    return {"$regex": re.escape(str(value)), "$options": "i"}


def iexact(value: str, trim: bool = False) -> Dict[str, str]:
    pattern = re.escape(str(value).strip() if trim else str(value))
    if trim:
        return {"$regex": rf"^\s*{pattern}\s*$", "$options": "i"}
    return {"$regex": f"^{pattern}$", "$options": "i"}


def remitted_agent() -> Dict[str, str]:
    return {"$regex": r"^\s*remit{2,3}ed\s*$", "$options": "i"}


def status_in(*statuses: str) -> Dict[str, str]:
    """Trimmed, case-insensitive match against any of ``statuses``."""
    alternatives = "|".join(re.escape(status) for status in statuses)
    return {"$regex": rf"^\s*(?:{alternatives})\s*$", "$options": "i"}


def _next_day(value: str) -> Optional[str]:
    try:
        return (date.fromisoformat(str(value).strip()[:10]) + timedelta(days=1)).isoformat()
    except ValueError:
        return None


def date_between(start: Optional[str], end: Optional[str]) -> Dict[str, str]:
    """Inclusive day range over ``YYYY-MM-DD[ HH:MM:SS]`` strings."""
    condition: Dict[str, str] = {}
    if start:
        condition["$gte"] = str(start).strip()[:10]
    if end:
        upper = _next_day(end)
        if upper:
            condition["$lt"] = upper
        else:
            condition["$lte"] = str(end).strip()
    return condition


def financial_query(
    merchant: Optional[str] = None,
    country: Optional[str] = None,
    city: Optional[str] = None,
    agent: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    date_field: str = "order_date",
) -> Dict[str, Any]:
    """Delivered orders, remitted by default, narrowed by the report filters."""
    query: Dict[str, Any] = {"status": iexact("delivered", trim=True)}
    agent_value = (agent or "").strip().lower()
    if agent_value and agent_value not in REMITTED_AGENTS:
        query["agent"] = iexact(agent_value, trim=True)
    else:
        query["agent"] = remitted_agent()
    if merchant:
        query["merchant"] = like(merchant)
    if country:
        query["country"] = iexact(country)
    if city:
        query["city"] = like(city)
    range_condition = date_between(start_date, end_date)
    if range_condition:
        query[date_field] = range_condition
    return query


class OrderRepository(BaseRepository[OrderInDB]):
    model = OrderInDB
    collection_name = "orders"

    async def create_indexes(self):
        await self.collection.create_index("order_no")
        await self.collection.create_index([("order_date", -1)])
        await self.collection.create_index("phone")
        logger.info(f"Indexes ensured for collection: {self.collection_name}")

    async def get_by_order_no(self, order_no: str) -> Optional[OrderInDB]:
        return await self.get_by({"order_no": str(order_no)})

    async def order_no_taken(self, order_no: str) -> bool:
        return await self.count({"order_no": str(order_no)}) > 0

    async def paginate(
        self,
        query: Dict[str, Any],
        page: int,
        per_page: int,
        sort: Optional[List[Tuple[str, int]]] = None,
    ) -> Tuple[List[OrderInDB], int, int]:
        """Returns (items, total, last_page)."""
        total = await self.count(query)
        last_page = max(1, math.ceil(total / per_page)) if per_page else 1
        items = await self.list_by(
            query, skip=(page - 1) * per_page, limit=per_page, sort=sort or [("order_date", -1)]
        )
        return items, total, last_page

    @staticmethod
    def search_clause(term: str) -> Dict[str, Any]:
        return {"$or": [{field: like(term)} for field in ORDER_SEARCH_FIELDS]}


async def get_order_repository(db=Depends(get_database)) -> OrderRepository:
    return OrderRepository(db)
