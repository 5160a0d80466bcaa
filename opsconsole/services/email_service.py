# opsconsole/services/email_service.py

from typing import Any, Dict, Optional

import httpx
from loguru import logger
from pydantic import EmailStr, TypeAdapter, ValidationError

from opsconsole.core.config import settings

_email_adapter = TypeAdapter(EmailStr)
CONTENT_TYPES = ("text/plain", "text/html")


def _is_email(value: Any) -> bool:
    try:
        _email_adapter.validate_python(value)
        return True
    except ValidationError:
        return False


def validate_email_args(args: Dict[str, Any]) -> Optional[str]:
    """First validation error for a send_email call, or None."""
    to = args.get("to")
    if to in (None, ""):
        return "The to field is required."
    if not _is_email(to):
        return "The to field must be a valid email address."

    subject = args.get("subject")
    if subject in (None, ""):
        return "The subject field is required."
    if not isinstance(subject, str):
        return "The subject field must be a string."
    if len(subject) > 255:
        return "The subject field must not be greater than 255 characters."

    content = args.get("content")
    if content in (None, ""):
        return "The content field is required."
    if not isinstance(content, str):
        return "The content field must be a string."

    content_type = args.get("content_type")
    if content_type is not None and content_type not in CONTENT_TYPES:
        return "The selected content type is invalid."
    from_email = args.get("from_email")
    if from_email is not None and not _is_email(from_email):
        return "The from email field must be a valid email address."
    from_name = args.get("from_name")
    if from_name is not None and (not isinstance(from_name, str) or len(from_name) > 255):
        return "The from name field must be a string of at most 255 characters."
    return None


class SendGridService:
    """Sends transactional email through the SendGrid v3 ``mail/send`` API."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    async def send_email(self, args: Dict[str, Any]) -> Dict[str, Any]:
        error = validate_email_args(args)
        if error:
            return {"type": "error", "message": error}

        api_key = (settings.SENDGRID_API_KEY or "").strip()
        if not api_key:
            return {"type": "error", "message": "Missing SENDGRID_API_KEY."}

        from_email = str(args.get("from_email") or settings.SENDGRID_FROM_EMAIL or "")
        from_name = str(args.get("from_name") or settings.SENDGRID_FROM_NAME or "")
        if not from_email.strip():
            return {"type": "error", "message": "Missing sender email. Set SENDGRID_FROM_EMAIL or pass from_email."}

        sender = {"email": from_email}
        if from_name:
            sender["name"] = from_name
        payload: Dict[str, Any] = {
            "personalizations": [{"to": [{"email": str(args["to"])}]}],
            "from": sender,
            "subject": str(args["subject"]),
            "content": [{"type": str(args.get("content_type") or "text/plain"), "value": str(args["content"])}],
        }
        if settings.SENDGRID_SANDBOX:
            payload["mail_settings"] = {"sandbox_mode": {"enable": True}}

        log = logger.bind(service="SendGridService", to=args["to"])
        try:
            async with httpx.AsyncClient(timeout=settings.SENDGRID_TIMEOUT, transport=self.transport) as client:
                response = await client.post(
                    settings.SENDGRID_ENDPOINT,
                    json=payload,
                    headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            log.error(f"SendGrid request failed: {e}")
            return {"type": "error", "message": f"SendGrid request failed: {e}"}

        if not response.is_success:
            try:
                details = response.json()
            except ValueError:
                details = None
            if not isinstance(details, (dict, list)):
                details = {"body": response.text}
            log.warning(f"SendGrid rejected the email request with status {response.status_code}.")
            return {
                "type": "error",
                "message": "SendGrid rejected the email request.",
                "details": details,
                "upstream_status": response.status_code,
            }

        log.success("Email accepted by SendGrid.")
        return {
            "type": "email_sent",
            "to": str(args["to"]),
            "subject": str(args["subject"]),
            "status": response.status_code,
            "message_id": response.headers.get("x-message-id") or None,
        }
