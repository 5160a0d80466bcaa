# opsconsole/modules/whatsapp/phone.py

import re
from typing import Iterable, Optional

_NON_DIGITS_RE = re.compile(r"\D")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """Normalizes a Kenyan/Tanzanian number to ``254...``/``255...`` digits, or None."""
    if raw is None:
        return None
    phone = _NON_DIGITS_RE.sub("", str(raw))
    if len(phone) < 9:
        return None
    if not phone.startswith(("254", "255")):
        phone = "254" + (phone[1:] if phone.startswith("0") else phone)
    return phone if 12 <= len(phone) <= 13 else None


def first_valid_phone(candidates: Iterable[Optional[str]]) -> Optional[str]:
    """First candidate (e.g. phone, then alt_no) that normalizes cleanly."""
    for candidate in candidates:
        normalized = normalize_phone(candidate)
        if normalized:
            return normalized
    return None
