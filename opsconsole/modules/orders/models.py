# opsconsole/modules/orders/models.py

import re
from datetime import date, datetime
from typing import Any, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator

from opsconsole.core.clock import utcnow

# Fields accepted when an order is created or edited through a tool call.
ORDER_WRITABLE_FIELDS = (
    "order_no", "order_date", "amount", "quantity", "item", "product_name",
    "client_name", "client_city", "address", "city", "country", "phone", "alt_no",
    "status", "agent", "store_name", "merchant", "code", "comments", "instructions",
    "delivery_date", "cc_email",
)

ORDER_SEARCH_FIELDS = (
    "order_no", "product_name", "client_name", "merchant", "city",
    "agent", "phone", "code", "alt_no", "store_name",
)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def parse_amount(raw: Any) -> float:
    """Best-effort numeric value of an order amount (`"KES 1,200"` -> 1200.0)."""
    if raw is None or isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    try:
        return float(text)
    except ValueError:
        pass
    match = _NUMBER_RE.search(re.sub(r"[^0-9.\-]", "", text))
    return float(match.group(0)) if match else 0.0


def _date_to_str(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    return value


class OrderInDB(BaseModel):
    """A row of the orders sheet. Dates are kept as ``YYYY-MM-DD`` strings."""

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    order_no: Optional[str] = None
    order_date: Optional[str] = None
    delivery_date: Optional[str] = None
    amount: Union[float, str, None] = None
    quantity: Union[int, str, None] = None
    item: Optional[str] = None
    product_name: Optional[str] = None
    client_name: Optional[str] = None
    client_city: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    alt_no: Optional[str] = None
    status: Optional[str] = None
    agent: Optional[str] = None
    store_name: Optional[str] = None
    merchant: Optional[str] = None
    code: Optional[str] = None
    comments: Optional[str] = None
    instructions: Optional[str] = None
    cc_email: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True, extra="allow")

    @field_validator("order_date", "delivery_date", mode="before")
    @classmethod
    def _normalize_dates(cls, value):
        return _date_to_str(value)

    @field_validator(
        "order_no", "phone", "alt_no", "code", "item", "store_name", "merchant",
        mode="before",
    )
    @classmethod
    def _stringify(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value
