"""Utility functions and helpers for the raibid application."""
import secrets
import string
from typing import Any

from ..config import Config

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def generate_password(length: int = 24) -> str:
    """Random alphanumeric password, safe to embed in URLs and Helm values."""
    return ''.join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))
