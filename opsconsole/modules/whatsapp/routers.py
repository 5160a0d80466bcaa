# opsconsole/modules/whatsapp/routers.py

from typing import Any, Dict

from fastapi import APIRouter, Depends, Path, Request
from fastapi.responses import JSONResponse
from loguru import logger

from opsconsole.core.security import CurrentUser
from opsconsole.models.api_common import to_public
from opsconsole.modules.orders.models import parse_amount
from opsconsole.modules.orders.repository import OrderRepository, get_order_repository
from .models import SendChatAPI
from .phone import first_valid_phone, normalize_phone
from .services import WhatsAppService, get_whatsapp_service, order_message

whatsapp_router = APIRouter()


def _provider_failure(result: Dict[str, Any], default_error: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": str(result.get("error") or default_error),
            "status": result.get("status"),
            "details": result.get("body"),
        },
    )


@whatsapp_router.post(
    "/send-chat",
    summary="Send a free-text WhatsApp message",
    tags=["WhatsApp"],
)
async def send_chat(
    current_user: CurrentUser,
    chat_in: SendChatAPI,
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
):
    log = logger.bind(user_id=str(current_user.id), endpoint="whatsapp.send_chat")
    formatted = normalize_phone(chat_in.to)
    if not formatted:
        log.error(f"Invalid phone number format: {chat_in.to}")
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid phone number format"})

    try:
        result = await whatsapp.sender.send(formatted, chat_in.message)
    except Exception as e:
        log.exception(f"Failed to send chat message: {e}")
        return JSONResponse(
            status_code=500, content={"success": False, "error": "An error occurred while sending the message"}
        )
    if not result.get("ok"):
        log.error(f"WhatsApp provider error (status {result.get('status')}): {result.get('error')}")
        return _provider_failure(result, "Failed to send message")

    previous = await whatsapp.previous_contact(chat_in.to, formatted)
    record = await whatsapp.record_sent(
        formatted,
        chat_in.message,
        result,
        client_name=previous.client_name if previous and previous.client_name else "Customer",
        store_name=previous.store_name if previous and previous.store_name else "CHAT",
        cc_agents=previous.cc_agents if previous else None,
    )
    log.info(f"Message saved (id={record.id}, sid={record.sid}).")
    return {"success": True, "message": "Message sent successfully", "sid": record.sid, "data": to_public(record)}


@whatsapp_router.post(
    "/send-message/{order_id}",
    summary="Send the unreachable-client notification for an order",
    tags=["WhatsApp"],
)
async def send_order_message(
    current_user: CurrentUser,
    order_id: str = Path(...),
    order_repo: OrderRepository = Depends(get_order_repository),
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
):
    log = logger.bind(user_id=str(current_user.id), order_id=order_id, endpoint="whatsapp.send_message")
    order = await order_repo.get_by_id(order_id)
    if order is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Order not found."})

    phone = first_valid_phone([order.phone, order.alt_no])
    if not phone:
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid phone number format"})

    store_name = str(order.store_name or "STORE").upper()
    try:
        quantity = int(order.quantity or 0)
    except (TypeError, ValueError):
        quantity = 0
    message = order_message(
        order.client_name or "Client",
        str(order.order_no or ""),
        str(order.product_name or ""),
        quantity,
        parse_amount(order.amount),
        store_name,
    )

    try:
        result = await whatsapp.sender.send(phone, message)
    except Exception as e:
        log.exception(f"WhatsApp sending failed: {e}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to send WhatsApp message"})
    if not result.get("ok"):
        log.error(f"Template send failed: {result}")
        return _provider_failure(result, "Failed to send WhatsApp message")

    record = await whatsapp.record_sent(
        phone,
        message,
        result,
        client_name=order.client_name or "Client",
        store_name=store_name,
        cc_agents=order.cc_email,
    )
    log.info(f"Order notification sent to {phone} (sid={record.sid}).")
    return {"success": True, "message": "Message sent successfully", "sid": record.sid, "data": to_public(record)}


@whatsapp_router.post(
    "/webhook",
    summary="Provider webhook for incoming messages and delivery status",
    tags=["WhatsApp"],
)
async def whatsapp_webhook(
    request: Request,
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    return await whatsapp.handle_webhook(payload if isinstance(payload, dict) else {})
