"""
PII Masking Utilities
Redacts customer contact details in log lines and error strings
"""
import re
from typing import Any


PII_PATTERNS = {
    "phone": re.compile(r"\(\d{3}\)\s*\d{3}-\d{4}"),
    "phone_simple": re.compile(r"\b\d{3}[-.\s]\d{3}[-.\s]\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

# Logical fields whose values are never logged verbatim
PII_FIELD_NAMES = {
    "customer_name",
    "customer_phone",
    "customer_address",
    "customer_signoff_name",
}

LOG_VALUE_LIMIT = 60


def mask_pii(text: str) -> str:
    """
    Mask contact-detail patterns in a string.

    Args:
        text: String that may contain phone numbers or e-mail addresses

    Returns:
        String with those patterns replaced with masks
    """
    if not text:
        return text

    result = PII_PATTERNS["phone"].sub("(***) ***-****", text)
    result = PII_PATTERNS["phone_simple"].sub("***-***-****", result)
    result = PII_PATTERNS["email"].sub("***@***.***", result)
    return result


def loggable_value(field: str, value: Any, limit: int = LOG_VALUE_LIMIT) -> str:
    """Masked, truncated rendering of a value for log lines"""
    if field.lower() in PII_FIELD_NAMES:
        return "***MASKED***"
    text = mask_pii(str(value))
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def mask_error_message(message: str) -> str:
    """Mask contact details in error messages before they reach the caller"""
    return mask_pii(message)
