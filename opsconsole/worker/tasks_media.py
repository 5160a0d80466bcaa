# opsconsole/worker/tasks_media.py
import asyncio
import uuid
from typing import Any, Dict, Optional

from loguru import logger

from opsconsole.core.logging_config import trace_id_var
from opsconsole.modules.whatsapp.services import MediaDecryptionError, download_and_decrypt_media
from opsconsole.worker.celery_app import celery_app


@celery_app.task(
    bind=True, name="whatsapp.decrypt_media", max_retries=2, default_retry_delay=30, acks_late=True
)
def decrypt_whatsapp_media(
    self, media_info: Dict[str, Any], media_type: str, message_id: str, trace_id: Optional[str] = None
):
    """Downloads an incoming WhatsApp attachment and stores the decrypted file."""
    current_trace_id = trace_id or f"task_{uuid.uuid4().hex[:12]}"
    token = trace_id_var.set(current_trace_id)
    log = logger.bind(
        trace_id=current_trace_id, task_name=self.name, job_id=self.request.id, message_id=message_id
    )
    try:
        path = asyncio.run(download_and_decrypt_media(media_info, media_type, message_id))
        return {"status": "saved", "path": str(path)}
    except (MediaDecryptionError, ValueError) as e:
        log.error(f"Media decryption failed: {e}")
        return {"status": "failed", "error": str(e)}
    except Exception as e:
        log.exception(f"Unexpected error while fetching media: {e}")
        raise self.retry(exc=e)
    finally:
        trace_id_var.reset(token)
