from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from chronos.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured (local development, tests) messages are
    logged instead of sent and the call reports success.
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
        from_name: str = "Chronos",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_address: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode", to=self._redact_address(to_address), subject=subject
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_address
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_address, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_address(to_address),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=self._redact_address(to_address))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_address(to_address),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_address(to_address), subject=subject)
        return True

    def send_password_reset_code(self, to_address: str, reset_code: str) -> bool:
        subject = "Chronos Password Reset Code"
        text_body = (
            f"Your password reset code is: {reset_code}\n\n"
            "The code expires shortly. If you did not request a reset, ignore this email."
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <h2>Reset your Chronos password</h2>
    <p>Use this code to choose a new password:</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{reset_code}</p>
    <p style="color: #616e7c;">If you did not request a reset, you can ignore this email.</p>
</body>
</html>
"""
        return self._send_email(to_address, subject, html_body, text_body)
