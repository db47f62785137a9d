from __future__ import annotations

import re
import unicodedata
from typing import Optional

from authkernel.storage.models import normalize_email, strip_invisible

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# E.164: optional plus, no leading zero, up to 15 digits
_PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")

MAX_NAME_LENGTH = 100
MIN_NAME_LENGTH = 2


def normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi-override characters."""
    return unicodedata.normalize("NFKC", strip_invisible(value))


def validate_email(value: str) -> str:
    """Return the normalized email or raise ValueError."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_phone_number(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = re.sub(r"[\s()-]", "", value)
    if not compact:
        return None
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("invalid phone number")
    return compact


def validate_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("name must be a string")
    normalized = normalize_unicode(value).strip()
    if len(normalized) < MIN_NAME_LENGTH:
        raise ValueError(f"name must be at least {MIN_NAME_LENGTH} characters")
    if len(normalized) > MAX_NAME_LENGTH:
        raise ValueError(f"name must be at most {MAX_NAME_LENGTH} characters")
    return normalized
