"""Logging utilities for PII redaction and secure logging."""

import hashlib
from typing import Optional


def redact_email(email: Optional[str]) -> str:
    """
    Redact email address for logging while maintaining uniqueness.

    Examples:
        >>> redact_email("user@example.com")
        'u***@example.com'
        >>> redact_email(None)
        'N/A'
    """
    if not email:
        return "N/A"

    try:
        local, domain = email.split("@", 1)

        # Short local parts would be fully revealed by the first-char form
        if len(local) < 3:
            email_hash = hashlib.sha256(email.encode()).hexdigest()[:6]
            return f"hash:{email_hash}@{domain}"

        return f"{local[0]}***@{domain}"

    except (ValueError, IndexError):
        email_hash = hashlib.sha256(str(email).encode()).hexdigest()[:6]
        return f"hash:{email_hash}"


def mask_email_destination(email: str) -> str:
    """
    Mask an address shown back to the user ("we sent a code to j***@example.com").

    Unlike ``redact_email`` this never falls back to a hash, since the user
    must be able to recognise their own mailbox.
    """
    local, _, domain = email.partition("@")
    if not domain:
        return "***"
    visible = local[:1] if len(local) < 4 else local[:2]
    return f"{visible}***@{domain}"


def redact_ip(ip_address: Optional[str]) -> str:
    """
    Redact IP address for logging while maintaining network info.

    Examples:
        >>> redact_ip("192.168.1.100")
        '192.168.1.***'
        >>> redact_ip(None)
        'N/A'
    """
    if not ip_address:
        return "N/A"

    # IPv4
    if "." in ip_address:
        parts = ip_address.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.{parts[1]}.{parts[2]}.***"

    # IPv6 (simplified)
    if ":" in ip_address:
        parts = ip_address.split(":")
        if len(parts) >= 4:
            return ":".join(parts[:3]) + ":***"

    ip_hash = hashlib.sha256(str(ip_address).encode()).hexdigest()[:6]
    return f"hash:{ip_hash}"


def fingerprint_ref(value: Optional[str]) -> str:
    """Short stable reference for session tokens and device fingerprints in logs."""
    if not value:
        return "N/A"
    return "ref:" + hashlib.sha256(value.encode()).hexdigest()[:8]
