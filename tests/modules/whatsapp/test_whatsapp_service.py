# tests/modules/whatsapp/test_whatsapp_service.py
import base64
import os

import httpx
import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from opsconsole.modules.whatsapp.phone import first_valid_phone, normalize_phone
from opsconsole.modules.whatsapp.repository import WhatsAppMessageRepository
from opsconsole.modules.whatsapp.services import (
    MEDIA_SUBDIR,
    MediaDecryptionError,
    WhatsAppService,
    decrypt_media,
    download_and_decrypt_media,
    incoming_message_body,
    media_keys,
    order_message,
)
from opsconsole.services.whatsapp_service import WhatsAppSender

pytestmark = pytest.mark.asyncio

MEDIA_KEY = base64.b64encode(bytes(range(32))).decode()


def encrypt_media(plain: bytes, media_key: str, media_type: str) -> bytes:
    keys = media_keys(media_key, media_type)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plain) + padder.finalize()
    encryptor = Cipher(algorithms.AES(keys[16:48]), modes.CBC(keys[:16])).encryptor()
    return encryptor.update(padded) + encryptor.finalize() + os.urandom(10)


class RecordingMediaDispatcher:
    def __init__(self):
        self.calls = []

    def __call__(self, media_info, media_type, message_id):
        self.calls.append((media_info, media_type, message_id))


@pytest.fixture
def media_dispatcher():
    return RecordingMediaDispatcher()


@pytest.fixture
def whatsapp(db_client, media_dispatcher) -> WhatsAppService:
    sender = WhatsAppSender(provider="custom", transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    return WhatsAppService(WhatsAppMessageRepository(db_client), sender, media_dispatcher=media_dispatcher)


async def test_normalize_phone_variants():
    assert normalize_phone("0712 345 678") == "254712345678"
    assert normalize_phone("+254 712-345-678") == "254712345678"
    assert normalize_phone("255754123456") == "255754123456"
    assert normalize_phone("712345678") == "254712345678"
    assert normalize_phone("12345") is None
    assert normalize_phone(None) is None
    assert first_valid_phone([None, "abc", "0798 000 111"]) == "254798000111"


async def test_order_message_uses_store_currency():
    tanzania = order_message("Neema", "RD-9", "Kettle", 2, 45000, "RDL3", contact_number="0700000000")
    assert "TZS 45,000" in tanzania
    assert "*Please call us back on 0700000000*" in tanzania

    kenya = order_message("Amina", "RD-1", "Blender", 1, 3500, "RDL1")
    assert "KES 3,500" in kenya
    assert "0740801187" in kenya


async def test_incoming_message_body_describes_media():
    assert incoming_message_body({"conversation": "hi"}) == "hi"
    assert incoming_message_body({"extendedTextMessage": {"text": "long"}}) == "long"
    assert incoming_message_body({"imageMessage": {"caption": "receipt"}}) == "[Image received]: receipt"
    assert incoming_message_body({"documentMessage": {"fileName": "invoice.pdf"}}) == "[Document received: invoice.pdf]"
    assert incoming_message_body({"reactionMessage": {}}) == "[Unknown message type]"


async def test_webhook_without_data_or_event(whatsapp):
    assert await whatsapp.handle_webhook({}) == {"status": "no_data"}
    assert await whatsapp.handle_webhook({"data": {}}) == {"status": "no_event"}
    assert await whatsapp.handle_webhook({"event": "presence.update"}) == {"status": "success"}


async def test_webhook_chats_update_stores_incoming_and_queues_media(whatsapp, media_dispatcher):
    image = {"url": "https://mmg.whatsapp.net/x", "mediaKey": MEDIA_KEY, "mimetype": "image/jpeg"}
    payload = {
        "event": "chats.update",
        "data": {
            "chats": {
                "messages": [
                    {"message": {"key": {"id": "in-1", "remoteJid": "254712345678@s.whatsapp.net"},
                                 "pushName": "Amina", "message": {"conversation": "Where is my order?"}}},
                    {"message": {"key": {"id": "in-2", "remoteJid": "254712345678@s.whatsapp.net"},
                                 "message": {"imageMessage": image}}},
                    {"message": {"key": {"id": "out-1", "fromMe": True, "remoteJid": "254700000000@s.whatsapp.net"},
                                 "message": {"conversation": "echo"}}},
                ]
            }
        },
    }

    assert await whatsapp.handle_webhook(payload) == {"status": "success"}

    stored = await whatsapp.message_repo.list_by({}, limit=0, sort=[("_id", 1)])
    assert [(m.to, m.sid, m.status) for m in stored] == [
        ("254712345678", "in-1", "received"),
        ("254712345678", "in-2", "received"),
    ]
    assert stored[0].client_name == "Amina"
    assert stored[1].client_name == "UNKNOWN"
    assert stored[1].message == "[Image received]"
    assert media_dispatcher.calls == [(image, "image", "in-2")]


async def test_webhook_status_update_maps_codes(whatsapp):
    sent = await whatsapp.record_sent(
        "254712345678", "Hello", {"ok": True, "body": {"data": {"key": {"id": "wamid-7"}}}}, "Amina", "RDL1", None
    )
    assert sent.sid == "wamid-7"

    await whatsapp.handle_webhook({"event": "messages.update", "data": {"key": {"id": "wamid-7"}, "status": "4"}})
    assert (await whatsapp.message_repo.get_by({"sid": "wamid-7"})).status == "read"

    await whatsapp.handle_webhook({"event": "message.status", "data": {"key": {"id": "wamid-7"}, "status": 9}})
    assert (await whatsapp.message_repo.get_by({"sid": "wamid-7"})).status == "unknown_9"


async def test_previous_contact_returns_latest_record(whatsapp):
    await whatsapp.record_sent("254712345678", "first", {}, "Old name", "RDL1", None)
    await whatsapp.record_sent("254712345678", "second", {}, "New name", "RDL2", "agent@realdeal.co.ke")

    previous = await whatsapp.previous_contact("0712345678", "254712345678")

    assert previous.client_name == "New name"
    assert previous.cc_agents == "agent@realdeal.co.ke"


async def test_decrypt_media_round_trip_and_failure():
    encrypted = encrypt_media(b"%PDF-1.4 invoice", MEDIA_KEY, "document")
    assert decrypt_media(encrypted, MEDIA_KEY, "document") == b"%PDF-1.4 invoice"

    with pytest.raises(MediaDecryptionError):
        decrypt_media(encrypted[:-3], MEDIA_KEY, "document")
    with pytest.raises(ValueError):
        media_keys(MEDIA_KEY, "hologram")


async def test_download_and_decrypt_media_writes_file(tmp_path):
    encrypted = encrypt_media(b"\xff\xd8jpeg-bytes", MEDIA_KEY, "image")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=encrypted))
    media_info = {"url": "https://mmg.whatsapp.net/y", "mediaKey": MEDIA_KEY, "mimetype": "image/jpeg"}

    path = await download_and_decrypt_media(media_info, "image", "in-2", storage_root=str(tmp_path), transport=transport)

    assert path == tmp_path / MEDIA_SUBDIR / "in-2.jpeg"
    assert path.read_bytes() == b"\xff\xd8jpeg-bytes"


async def test_download_rejects_unsafe_filename_and_failed_download(tmp_path):
    encrypted = encrypt_media(b"doc", MEDIA_KEY, "document")
    ok = httpx.MockTransport(lambda request: httpx.Response(200, content=encrypted))
    media_info = {"url": "https://mmg.whatsapp.net/z", "mediaKey": MEDIA_KEY, "fileName": "../../etc/passwd"}

    path = await download_and_decrypt_media(media_info, "document", "in-3", storage_root=str(tmp_path), transport=ok)
    assert path == tmp_path / MEDIA_SUBDIR / "passwd"

    missing = httpx.MockTransport(lambda request: httpx.Response(404))
    with pytest.raises(MediaDecryptionError):
        await download_and_decrypt_media(media_info, "document", "in-3", storage_root=str(tmp_path), transport=missing)


async def test_webhook_ignores_malformed_entries(whatsapp, media_dispatcher):
    payload = {
        "event": "chats.update",
        "data": {
            "chats": {
                "messages": [
                    {"message": {"key": "abc", "message": {"conversation": "lost"}}},
                    {"message": {"key": {"id": 7, "remoteJid": ["254700000000"]}}},
                    {"message": {"key": {"id": "in-9", "remoteJid": "254712345678@s.whatsapp.net"},
                                 "pushName": 42, "message": {"imageMessage": "corrupt"}}},
                ]
            }
        },
    }

    assert await whatsapp.handle_webhook(payload) == {"status": "success"}

    stored = await whatsapp.message_repo.list_by({}, limit=0)
    assert [(m.sid, m.client_name, m.message) for m in stored] == [("in-9", "UNKNOWN", "[Image received]")]
    assert media_dispatcher.calls == []

    assert await whatsapp.handle_webhook({"event": "messages.update", "data": {"key": "abc", "status": 3}}) == {
        "status": "success"
    }
    assert await whatsapp.handle_webhook(
        {"event": "messages.update", "data": {"key": {"id": "in-9"}, "status": {"code": 3}}}
    ) == {"status": "success"}
    assert (await whatsapp.message_repo.get_by({"sid": "in-9"})).status == "received"
