"""Error logging service with secret and PII redaction for production safety."""

import logging
import re
import traceback
from typing import Any, Dict, Optional

from app.utils.datetime_utils import utc_now
from app.utils.logging_utils import redact_ip


class ErrorLoggingService:
    """Service for logging errors without leaking MFA material or PII."""

    # (pattern, replacement, flags) applied in order
    REDACTIONS = [
        # otpauth:// provisioning URIs carry the raw TOTP secret
        (r'otpauth://\S+', '[REDACTED_OTPAUTH_URI]', re.IGNORECASE),
        (r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b', '[REDACTED_EMAIL]', 0),
        (r'\b(?:\d{1,3}\.){3}\d{1,3}\b', '[REDACTED_IP]', 0),
        (r'(bearer)\s+[A-Za-z0-9._-]{20,}', r'\1 [REDACTED_TOKEN]', re.IGNORECASE),
        (
            r'(session_token|token|jwt|secret|candidate_secret)["\']?\s*[:=]\s*["\']?([A-Za-z0-9_.=-]{16,})',
            r'\1=[REDACTED_TOKEN]',
            re.IGNORECASE,
        ),
        # Submitted one-time and backup codes
        (r'(code)["\']?\s*[:=]\s*["\']?([A-Za-z0-9-]{6,9})\b', r'\1=[REDACTED_CODE]', re.IGNORECASE),
        (r'(password|passwd|pwd)["\']?\s*[:=]\s*["\']?([^"\'\s]+)', r'\1=[REDACTED_PASSWORD]', re.IGNORECASE),
    ]

    SENSITIVE_KEYS = ('password', 'secret', 'token', 'code', 'key', 'auth', 'credential', 'otp')

    @staticmethod
    def redact_pii(text: str) -> str:
        """
        Redact PII and MFA secrets from text.

        Args:
            text: Text potentially containing PII

        Returns:
            Text with PII redacted
        """
        if not text:
            return text

        redacted = text
        for pattern, replacement, flags in ErrorLoggingService.REDACTIONS:
            redacted = re.sub(pattern, replacement, redacted, flags=flags)
        return redacted

    @staticmethod
    def log_error(
        logger: logging.Logger,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> None:
        """
        Log error with PII redaction.

        Args:
            logger: Logger instance
            error: Exception to log
            context: Additional context (will be redacted)
            user_id: User ID (not PII, safe to log)
        """
        error_traceback = ''.join(traceback.format_exception(
            type(error), error, error.__traceback__
        ))

        error_message = ErrorLoggingService.redact_pii(str(error))
        error_traceback = ErrorLoggingService.redact_pii(error_traceback)

        log_parts = [
            f"Error: {error_message}",
            f"Type: {type(error).__name__}",
        ]

        if user_id:
            log_parts.append(f"User ID: {user_id}")

        if context:
            safe_context = {
                k: ErrorLoggingService.redact_pii(str(v))
                for k, v in context.items()
            }
            log_parts.append(f"Context: {safe_context}")

        log_parts.append(f"Traceback:\n{error_traceback}")

        logger.error('\n'.join(log_parts))

    @staticmethod
    def log_security_event(
        logger: logging.Logger,
        event_type: str,
        message: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log security-related event (rate limit hit, CSRF failure, ...).

        Args:
            logger: Logger instance
            event_type: Type of security event
            message: Event description
            user_id: User ID if applicable
            ip_address: Source IP address (logged truncated)
            additional_data: Additional event data
        """
        log_data = {
            "timestamp": utc_now().isoformat(),
            "event_type": event_type,
            "message": ErrorLoggingService.redact_pii(message),
        }

        if user_id:
            log_data["user_id"] = user_id

        if ip_address:
            log_data["ip_prefix"] = redact_ip(ip_address)

        if additional_data:
            log_data["data"] = ErrorLoggingService.sanitize_request_data(additional_data)

        logger.warning(f"SECURITY_EVENT: {log_data}")

    @staticmethod
    def sanitize_request_data(data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Sanitize request data for logging.

        Args:
            data: Request data dictionary

        Returns:
            Sanitized dictionary safe for logging
        """
        if not data:
            return {}

        sanitized = {}

        for key, value in data.items():
            key_lower = key.lower()

            if any(sensitive in key_lower for sensitive in ErrorLoggingService.SENSITIVE_KEYS):
                sanitized[key] = '[REDACTED]'
            elif isinstance(value, str):
                sanitized[key] = ErrorLoggingService.redact_pii(value)
            elif isinstance(value, dict):
                sanitized[key] = ErrorLoggingService.sanitize_request_data(value)
            elif isinstance(value, list):
                sanitized[key] = [
                    ErrorLoggingService.sanitize_request_data(item) if isinstance(item, dict)
                    else ErrorLoggingService.redact_pii(item) if isinstance(item, str)
                    else item
                    for item in value
                ]
            else:
                sanitized[key] = value

        return sanitized


# Create singleton instance
error_logging_service = ErrorLoggingService()
