# opsconsole/core/rate_limit.py

from slowapi import Limiter
from slowapi.util import get_remote_address

from opsconsole.core.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)
