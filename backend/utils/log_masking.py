"""Helpers for keeping personal data out of log lines."""
from typing import Optional


def mask_email(email: Optional[str]) -> Optional[str]:
    """Mask an email for logs: keep up to three characters of the local part.

    mask_email("jonathan@example.com") -> "jon***@example.com"
    """
    if not email:
        return None

    local_part, _, domain = email.partition("@")
    local_part = local_part.strip()
    suffix = f"@{domain}" if domain else ""

    if not local_part:
        return f"***{suffix}"

    return f"{local_part[:3]}***{suffix}"
