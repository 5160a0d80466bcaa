# opsconsole/modules/whatsapp/services.py

import base64
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from fastapi import Depends
from loguru import logger

from opsconsole.core.config import settings
from opsconsole.services.whatsapp_service import WhatsAppSender, get_whatsapp_sender
from .models import MESSAGE_STATUS_MAP, WhatsAppMessageInDB
from .repository import WhatsAppMessageRepository, get_whatsapp_message_repository

MEDIA_KEY_INFO = {
    "image": b"WhatsApp Image Keys",
    "sticker": b"WhatsApp Image Keys",
    "video": b"WhatsApp Video Keys",
    "audio": b"WhatsApp Audio Keys",
    "document": b"WhatsApp Document Keys",
}
MEDIA_MESSAGE_KEYS = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "stickerMessage": "sticker",
}
MAC_LENGTH = 10
MEDIA_SUBDIR = "whatsapp-media"

MediaDispatcher = Callable[[Dict[str, Any], str, str], Any]


class MediaDecryptionError(RuntimeError):
    pass


def order_message(
    client_name: str,
    order_no: str,
    product_name: str,
    quantity: int,
    amount: float,
    store_name: str,
    contact_number: Optional[str] = None,
) -> str:
    currency = "TZS" if store_name == "RDL3" else "KES"
    contact = contact_number or settings.ORDER_CONTACT_PHONE
    return (
        "*REALDEAL LOGISTICS - ORDER NOTIFICATION*\n\n"
        f"Hello {client_name},\n\n"
        f"We tried contacting you regarding your order *{order_no}* but your phone was unreachable.\n\n"
        "*Order Details:*\n"
        f"\U0001F4E6 Product: {product_name}\n"
        f"\U0001F522 Quantity: {quantity} pcs\n"
        f"\U0001F4B0 Amount: {currency} {amount:,.0f}\n\n"
        f"*Please call us back on {contact}* to confirm your availability for delivery.\n\n"
        "Thank you for choosing Realdeal Logistics!\n\n"
        "_Delivering Excellence, Every Time._"
    )


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def provider_message_id(result: Dict[str, Any]) -> Optional[str]:
    body = result.get("body")
    if not isinstance(body, dict):
        return None
    key = (body.get("data") or {}).get("key") if isinstance(body.get("data"), dict) else None
    return key.get("id") if isinstance(key, dict) else None


def incoming_message_body(message: Dict[str, Any]) -> str:
    if "conversation" in message:
        return str(message["conversation"])
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and "text" in extended:
        return str(extended["text"])
    if "imageMessage" in message:
        caption = _as_dict(message["imageMessage"]).get("caption") or ""
        return "[Image received]" + (f": {caption}" if caption else "")
    if "videoMessage" in message:
        caption = _as_dict(message["videoMessage"]).get("caption") or ""
        return "[Video received]" + (f": {caption}" if caption else "")
    if "audioMessage" in message:
        return "[Audio received]"
    if "documentMessage" in message:
        file_name = _as_dict(message["documentMessage"]).get("fileName") or "document"
        return f"[Document received: {file_name}]"
    if "stickerMessage" in message:
        return "[Sticker received]"
    return "[Unknown message type]"


def media_attachment(message: Dict[str, Any]) -> Optional[tuple]:
    """``(media_info, media_type)`` for the first downloadable attachment in a message."""
    for key, media_type in MEDIA_MESSAGE_KEYS.items():
        info = message.get(key)
        if isinstance(info, dict) and info.get("url") and info.get("mediaKey"):
            return info, media_type
    return None


def media_keys(media_key: str, media_type: str) -> bytes:
    info = MEDIA_KEY_INFO.get(media_type)
    if info is None:
        raise ValueError(f"Invalid media type: {media_type}")
    hkdf = HKDF(algorithm=hashes.SHA256(), length=112, salt=None, info=info)
    return hkdf.derive(base64.b64decode(media_key))


def decrypt_media(encrypted: bytes, media_key: str, media_type: str) -> bytes:
    """AES-256-CBC decryption of a WhatsApp media download (trailing MAC stripped)."""
    keys = media_keys(media_key, media_type)
    iv, cipher_key = keys[:16], keys[16:48]
    ciphertext = encrypted[:-MAC_LENGTH]
    try:
        decryptor = Cipher(algorithms.AES(cipher_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise MediaDecryptionError("Failed to decrypt media.") from e


def media_filename(media_info: Dict[str, Any], message_id: str) -> str:
    mime_type = str(media_info.get("mimetype") or "application/octet-stream")
    extension = mime_type.split("/", 1)[1].split(";", 1)[0] if "/" in mime_type else "bin"
    # Provider-supplied names never escape the media directory.
    return Path(str(media_info.get("fileName") or f"{message_id}.{extension}")).name


async def download_and_decrypt_media(
    media_info: Dict[str, Any],
    media_type: str,
    message_id: str,
    storage_root: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Path:
    url = media_info.get("url")
    media_key = media_info.get("mediaKey")
    if not url or not media_key:
        raise MediaDecryptionError("Media object is missing url or mediaKey.")

    async with httpx.AsyncClient(timeout=settings.WHATSAPP_TIMEOUT, transport=transport) as client:
        response = await client.get(url)
    if not response.is_success:
        raise MediaDecryptionError(f"Failed to download media from URL: {url}")

    data = decrypt_media(response.content, media_key, media_type)
    target_dir = Path(storage_root or settings.MEDIA_STORAGE_PATH) / MEDIA_SUBDIR
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / media_filename(media_info, message_id)
    path.write_bytes(data)
    logger.bind(service="WhatsAppMedia", message_id=message_id).info(
        f"Media decrypted and saved to {path} ({media_type}, {len(data)} bytes)."
    )
    return path


def enqueue_media_decryption(media_info: Dict[str, Any], media_type: str, message_id: str) -> None:
    from opsconsole.worker.tasks_media import decrypt_whatsapp_media

    decrypt_whatsapp_media.delay(media_info, media_type, message_id)


class WhatsAppService:
    """Outbound sends with message bookkeeping plus provider webhook handling."""

    def __init__(
        self,
        message_repo: WhatsAppMessageRepository,
        sender: WhatsAppSender,
        media_dispatcher: Optional[MediaDispatcher] = None,
    ):
        self.message_repo = message_repo
        self.sender = sender
        self.media_dispatcher = media_dispatcher or enqueue_media_decryption

    async def record_sent(
        self,
        to: str,
        message: str,
        result: Dict[str, Any],
        client_name: Optional[str],
        store_name: Optional[str],
        cc_agents: Optional[str],
    ) -> WhatsAppMessageInDB:
        return await self.message_repo.create(
            WhatsAppMessageInDB(
                to=to,
                client_name=client_name,
                store_name=store_name,
                cc_agents=cc_agents,
                message=message,
                status="sent",
                sid=provider_message_id(result),
            )
        )

    async def previous_contact(self, *numbers: str) -> Optional[WhatsAppMessageInDB]:
        return await self.message_repo.latest_for_number(*numbers)

    async def handle_webhook(self, data: Dict[str, Any]) -> Dict[str, str]:
        log = logger.bind(service="WhatsAppWebhook")
        if not data:
            log.warning("Empty webhook data received.")
            return {"status": "no_data"}
        if "event" not in data:
            log.warning("No 'event' field found in webhook data.")
            return {"status": "no_event"}

        event = data["event"]
        log.info(f"Webhook event type: {event}")
        if event == "chats.update":
            await self._handle_chats_update(data)
        elif event in ("message.status", "messages.update"):
            await self._handle_message_status(data)
        else:
            log.info(f"Unhandled event type: {event}")
        return {"status": "success"}

    async def _handle_chats_update(self, data: Dict[str, Any]) -> int:
        payload = data.get("data") if isinstance(data.get("data"), dict) else {}
        chats = payload.get("chats")
        if not isinstance(chats, dict):
            logger.warning("No chats data found in webhook payload.")
            return 0

        stored = 0
        messages = chats.get("messages") if isinstance(chats.get("messages"), list) else []
        for wrapper in messages:
            message_data = wrapper.get("message") if isinstance(wrapper, dict) else None
            if not isinstance(message_data, dict):
                continue
            key = _as_dict(message_data.get("key"))
            message_id = key.get("id")
            if key.get("fromMe"):
                continue
            sender = key.get("remoteJidAlt") or key.get("remoteJid")
            if isinstance(sender, str) and "@" in sender:
                sender = sender.split("@", 1)[0]
            if not isinstance(sender, str) or not sender or not isinstance(message_id, str) or not message_id:
                logger.warning(f"Skipping webhook message without sender or id (from={sender}, id={message_id}).")
                continue

            content = message_data.get("message") if isinstance(message_data.get("message"), dict) else {}
            push_name = message_data.get("pushName")
            await self.message_repo.create(
                WhatsAppMessageInDB(
                    to=sender,
                    client_name=push_name if isinstance(push_name, str) and push_name else "UNKNOWN",
                    store_name="WEBHOOK",
                    message=incoming_message_body(content),
                    status="received",
                    sid=message_id,
                )
            )
            stored += 1

            attachment = media_attachment(content)
            if attachment is not None:
                media_info, media_type = attachment
                self.media_dispatcher(media_info, media_type, message_id)
        return stored

    async def _handle_message_status(self, data: Dict[str, Any]) -> Optional[str]:
        payload = data.get("data") if isinstance(data.get("data"), dict) else {}
        message_id = _as_dict(payload.get("key")).get("id")
        status_code = payload.get("status")
        if not isinstance(message_id, str) or not message_id or not isinstance(status_code, (int, str)):
            logger.warning(f"Missing message status fields: {payload}")
            return None
        try:
            status_code = int(status_code)
        except (TypeError, ValueError):
            pass
        status = MESSAGE_STATUS_MAP.get(status_code, f"unknown_{status_code}")
        updated = await self.message_repo.set_status_by_sid(message_id, status)
        logger.info(f"Message {message_id} marked '{status}' ({updated} record(s)).")
        return status


async def get_whatsapp_service(
    message_repo: WhatsAppMessageRepository = Depends(get_whatsapp_message_repository),
    sender: WhatsAppSender = Depends(get_whatsapp_sender),
) -> WhatsAppService:
    return WhatsAppService(message_repo, sender)
