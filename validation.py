"""Shared input validation and sanitisation helpers."""
import re
from typing import Any, Optional

from email_validator import EmailNotValidError, validate_email

from database import is_object_id
from errors import ValidationError

_TAG_RE = re.compile(r"<[^>]*>")


def strip_html(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return value
    cleaned = _TAG_RE.sub("", value)
    cleaned = cleaned.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")
    return cleaned.strip()


def normalize_email(email: Optional[str], code: str = "INVALID_EMAIL", message: str = "Please provide a valid email address.") -> str:
    if not email or not isinstance(email, str):
        raise ValidationError(message, code=code)
    try:
        validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError:
        raise ValidationError(message, code=code)
    return email.strip().lower()


def require_object_id(value: Any, code: str = "INVALID_ID", message: str = "The provided ID is not valid.") -> str:
    if not is_object_id(value):
        raise ValidationError(message, code=code)
    return value
