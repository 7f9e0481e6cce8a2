"""
Utility functions for the despachante service.
"""

import hashlib
import logging
import re

logger = logging.getLogger(__name__)

COUNTRY_CODE = "55"


def normalize_phone(phone: str) -> str:
    """
    Format a phone number the way the gateway expects it.

    Non-digits are removed, the Brazilian country code is prefixed when
    missing, and a mobile "9" is inserted after the area code when the
    number has the 12-digit landline length (55 + DDD + 8 digits).
    The result is not validated.

    Args:
        phone: Raw phone number

    Returns:
        Normalized digits-only phone number
    """
    digits = re.sub(r"\D", "", str(phone).strip())
    if not digits.startswith(COUNTRY_CODE):
        digits = COUNTRY_CODE + digits

    if len(digits) == 12:
        digits = digits[:4] + "9" + digits[4:]

    logger.debug(f"Normalized phone {phone!r} -> {digits}")
    return digits


def md5_hex(content: bytes) -> str:
    """MD5 digest of a document's bytes, used for duplicate detection."""
    return hashlib.md5(content).hexdigest()


def preview(text: str, size: int = 50) -> str:
    """Shorten text for log lines."""
    if text is None:
        return ""
    return text if len(text) <= size else text[:size] + "..."
