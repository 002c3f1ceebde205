"""
BasketSync Security Utilities

One-way hashing of customer contact details. Raw emails and phone numbers
never reach the database; orders carry a keyed digest instead so repeat
buyers can still be matched without storing PII.
"""

import hashlib
import hmac

from core.config import get_settings


def normalize_contact(value: str | None) -> str | None:
    """Lowercase and strip a contact value; blank values become None."""
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def hash_contact(value: str | None) -> str | None:
    """Return the HMAC-SHA256 hex digest of a normalized contact value."""
    cleaned = normalize_contact(value)
    if cleaned is None:
        return None
    key = get_settings().contact_hash_salt.encode()
    return hmac.new(key, cleaned.encode(), hashlib.sha256).hexdigest()
