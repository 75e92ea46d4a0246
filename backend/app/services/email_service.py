"""Email sending service using SMTP (aiosmtplib).

Emails are silently skipped when SMTP_HOST is not configured. Sending is
fire-and-forget from the caller's point of view: ``send_email`` never raises,
so a mail outage can never turn into a failed MFA request. The user simply
asks for a new code.
"""

import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from app.config import settings as _settings
from app.utils.logging_utils import redact_email

logger = logging.getLogger(__name__)


class EmailService:
    """Thin wrapper around aiosmtplib for sending transactional emails."""

    def __init__(self, smtp_host: Optional[str], smtp_port: int, smtp_username: Optional[str],
                 smtp_password: Optional[str], from_email: str, from_name: str,
                 use_tls: bool):
        self._host = smtp_host
        self._port = smtp_port
        self._username = smtp_username or ""
        self._password = smtp_password or ""
        self._from_email = from_email
        self._from_name = from_name
        self._use_tls = use_tls

    @property
    def is_configured(self) -> bool:
        """Return True when SMTP credentials are present."""
        return bool(self._host)

    async def send_email(self, to_email: str, subject: str, html_body: str,
                         text_body: str) -> bool:
        """
        Send an email.  Returns True on success, False otherwise (never raises).
        When SMTP is not configured the call is a no-op that returns False.
        """
        if not self.is_configured:
            logger.info("Email not configured, skipping send to %s: %s", redact_email(to_email), subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self._from_name} <{self._from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self._host,
                port=self._port,
                username=self._username,
                password=self._password,
                use_tls=False,       # SSL on port 465
                start_tls=self._use_tls,  # STARTTLS on port 587 (default)
            )
            logger.info("Email sent to %s: %s", redact_email(to_email), subject)
            return True
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email to %s: %s", redact_email(to_email), exc)
            return False

    async def send_mfa_code_email(self, to_email: str, code: str, purpose: str = "login",
                                  valid_minutes: int = 10) -> bool:
        """Send a one-time verification code for MFA setup or sign-in."""
        if purpose == "setup":
            subject = f"Confirm two-factor authentication for {self._from_name}"
            intro = "Use this code to finish turning on two-factor authentication."
        else:
            subject = f"Your {self._from_name} sign-in code"
            intro = "Use this code to finish signing in."

        safe_code = html.escape(code)
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h2 style="color: #2D3748;">Your verification code</h2>
  <p>{intro}</p>
  <p style="margin: 30px 0; font-size: 32px; letter-spacing: 8px; font-weight: bold;">
    {safe_code}
  </p>
  <p style="color: #718096; font-size: 14px;">
    This code expires in <strong>{valid_minutes} minutes</strong> and can only be used once.
    If you didn't request it, someone may know your password; change it now.
  </p>
</body>
</html>"""
        text_body = (
            f"{intro}\n\n"
            f"Verification code: {code}\n\n"
            f"This code expires in {valid_minutes} minutes and can only be used once.\n"
            f"If you didn't request it, change your password."
        )
        return await self.send_email(to_email, subject, html_body, text_body)


# Module-level singleton, constructed once from loaded settings
email_service = EmailService(
    smtp_host=_settings.SMTP_HOST,
    smtp_port=_settings.SMTP_PORT,
    smtp_username=_settings.SMTP_USERNAME,
    smtp_password=_settings.SMTP_PASSWORD,
    from_email=_settings.SMTP_FROM_EMAIL,
    from_name=_settings.SMTP_FROM_NAME,
    use_tls=_settings.SMTP_USE_TLS,
)
