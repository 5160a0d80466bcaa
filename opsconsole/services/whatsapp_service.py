# opsconsole/services/whatsapp_service.py

from typing import Any, Dict, Optional

import httpx
from loguru import logger

from opsconsole.core.config import settings
from opsconsole.core.logging_config import trace_id_var
from opsconsole.modules.whatsapp.phone import normalize_phone

META_GRAPH_API_BASE_URL = "https://graph.facebook.com/v20.0"
TWILIO_API_BASE_URL = "https://api.twilio.com/2010-04-01"
AFRICASTALKING_MESSAGING_URL = "https://api.africastalking.com/version1/messaging"


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class WhatsAppSender:
    """Sends a text message through the configured WhatsApp provider.

    Every provider returns ``{"ok", "status", "body"}`` plus ``"error"`` on failure.
    Network errors propagate to the caller.
    """

    def __init__(self, provider: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.provider = (provider or settings.WHATSAPP_PROVIDER or "custom").strip().lower()
        self.transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.WHATSAPP_TIMEOUT, transport=self.transport, **kwargs)

    async def send(self, to: str, message: str) -> Dict[str, Any]:
        log = logger.bind(trace_id=trace_id_var.get(), service="WhatsAppSender", provider=self.provider)
        log.info("Sending WhatsApp message...")
        if self.provider == "meta":
            result = await self._send_via_meta(to, message)
        elif self.provider == "twilio":
            result = await self._send_via_twilio(to, message)
        elif self.provider == "africastalking":
            result = await self._send_via_africastalking(to, message)
        else:
            result = await self._send_via_custom(to, message)

        if result.get("ok"):
            log.success(f"WhatsApp message accepted (status {result.get('status')}).")
        else:
            log.warning(f"WhatsApp send failed: {result.get('error') or result.get('status')}")
        return result

    async def _send_via_meta(self, to: str, message: str) -> Dict[str, Any]:
        phone_number_id = settings.WHATSAPP_META_PHONE_NUMBER_ID or ""
        token = settings.WHATSAPP_META_ACCESS_TOKEN or ""
        if not phone_number_id or not token:
            return {"ok": False, "error": "Missing Meta WhatsApp credentials."}
        async with self._client() as client:
            response = await client.post(
                f"{META_GRAPH_API_BASE_URL}/{phone_number_id}/messages",
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                json={
                    "messaging_product": "whatsapp",
                    "to": to,
                    "type": "text",
                    "text": {"body": message},
                },
            )
        return self._result(response)

    async def _send_via_twilio(self, to: str, message: str) -> Dict[str, Any]:
        sid = settings.WHATSAPP_TWILIO_ACCOUNT_SID or ""
        token = settings.WHATSAPP_TWILIO_AUTH_TOKEN or ""
        sender = settings.WHATSAPP_TWILIO_FROM or ""
        if not sid or not token or not sender:
            return {"ok": False, "error": "Missing Twilio WhatsApp credentials."}
        async with self._client(auth=(sid, token)) as client:
            response = await client.post(
                f"{TWILIO_API_BASE_URL}/Accounts/{sid}/Messages.json",
                data={
                    "From": sender if sender.startswith("whatsapp:") else f"whatsapp:{sender}",
                    "To": to if to.startswith("whatsapp:") else f"whatsapp:{to}",
                    "Body": message,
                },
            )
        return self._result(response)

    async def _send_via_africastalking(self, to: str, message: str) -> Dict[str, Any]:
        username = settings.WHATSAPP_AT_USERNAME or ""
        api_key = settings.WHATSAPP_AT_API_KEY or ""
        if not username or not api_key:
            return {"ok": False, "error": "Missing Africa's Talking credentials."}
        async with self._client() as client:
            response = await client.post(
                AFRICASTALKING_MESSAGING_URL,
                headers={"apiKey": api_key, "Accept": "application/json"},
                data={
                    "username": username,
                    "to": to,
                    "message": message,
                    "from": settings.WHATSAPP_AT_FROM or "",
                },
            )
        return self._result(response)

    async def _send_via_custom(self, to: str, message: str) -> Dict[str, Any]:
        api_key = settings.whatsapp_custom_api_key
        if not api_key:
            return {
                "ok": False,
                "error": "Custom provider selected. Set WHATSAPP_CUSTOM_API_KEY or WASENDERAPI_API_KEY.",
            }
        formatted_to = normalize_phone(to)
        if not formatted_to:
            return {"ok": False, "error": "Invalid phone number format for Wasender API."}

        url = settings.WHATSAPP_CUSTOM_BASE_URL.rstrip("/") + "/" + settings.WHATSAPP_CUSTOM_SEND_PATH.lstrip("/")
        headers = {
            settings.WHATSAPP_CUSTOM_AUTH_HEADER: f"{settings.WHATSAPP_CUSTOM_AUTH_PREFIX}{api_key}",
            "Accept": "application/json",
        }
        payload = {
            settings.WHATSAPP_CUSTOM_TO_KEY: formatted_to,
            settings.WHATSAPP_CUSTOM_MESSAGE_KEY: message,
        }
        async with self._client() as client:
            response = await client.post(url, headers=headers, json=payload)
        result = self._result(response)
        if not result["ok"]:
            body = result.get("body")
            upstream_message = body.get("message") if isinstance(body, dict) else None
            result["error"] = upstream_message or f"Wasender API request failed with status {response.status_code}."
            result["request"] = {"to": formatted_to, "message": message}
        return result

    @staticmethod
    def _result(response: httpx.Response) -> Dict[str, Any]:
        return {"ok": response.is_success, "status": response.status_code, "body": _body(response)}


def get_whatsapp_sender() -> WhatsAppSender:
    return WhatsAppSender()
