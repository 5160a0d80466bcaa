# opsconsole/modules/reports/models.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from opsconsole.core.clock import utcnow
from opsconsole.modules.tasks.models import new_uuid

REPORT_HEADINGS = [
    "Order No", "Order Date", "Delivery Date", "Merchant", "Client Name", "Product Name",
    "Quantity", "Amount", "Status", "City", "Country", "Phone", "Agent",
]
REPORT_FIELDS = [
    "order_no", "order_date", "delivery_date", "merchant", "client_name", "product_name",
    "quantity", "amount", "status", "city", "country", "phone", "agent",
]


class MerchantWorkflowItem(BaseModel):
    merchant: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    matched_order_ids: List[str] = Field(default_factory=list)
    matched_orders: List[Dict[str, Any]] = Field(default_factory=list)
    matched_count: int = 0


class ReportTaskInDB(BaseModel):
    """Two-step "mark delivered, then remitted" workflow over matched orders."""

    id: str = Field(default_factory=new_uuid, alias="_id")
    user_id: str
    type: str = "report_delivery_workflow"
    status: str = "waiting_confirmation"
    current_step: str = "confirm_delivery"
    confirmation_required: bool = True
    message: str = ""
    merchants: List[MerchantWorkflowItem] = Field(default_factory=list)
    summary: Dict[str, int] = Field(default_factory=dict)
    report_links: List[Dict[str, str]] = Field(default_factory=list)
    logs: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)
