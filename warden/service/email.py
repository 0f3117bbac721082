from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from warden.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Outbound mail for verification codes.

    Sends over SMTP (STARTTLS or implicit TLS). When no SMTP host or sender
    address is configured the message is logged instead of sent.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Warden",
        app_name: str = "Warden",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.app_name = app_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, to_email: str, msg: MIMEMultipart) -> None:
        """Hand one message to the SMTP relay; raises on any transport failure."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, msg.as_string())

    def send_verification_code(self, to_email: str, code: str, name: str = "") -> bool:
        """Send the one-hour email verification code."""
        subject = f"Your {self.app_name} verification code"
        greeting = f"Hi {name}," if name else "Hi,"

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <p>{escape(greeting)}</p>
    <p>Enter this code to confirm your email address:</p>
    <p style="font-size: 28px; font-weight: 700; letter-spacing: 6px;">{escape(code)}</p>
    <p>The code expires in one hour. If you did not create an account, ignore this email.</p>
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{escape(self.app_name)}</p>
</body>
</html>
"""

        text_body = f"""{greeting}

Enter this code to confirm your email address:

    {code}

The code expires in one hour. If you did not create an account, ignore this email.

---
{self.app_name}
"""

        if not self.is_configured:
            logger.info("email_dev_mode", to=self._redact_email(to_email), subject=subject)
            return True

        try:
            self._deliver(to_email, self._build_message(to_email, subject, html_body, text_body))
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "verification_email_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                smtp_code=getattr(exc, "smtp_code", None),
                error=str(exc),
            )
            return False
        logger.info("verification_email_sent", to=self._redact_email(to_email))
        return True
