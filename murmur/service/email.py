from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from murmur.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Sends transactional email over SMTP.

    Every ``send_*`` method returns True on success and False on any delivery
    failure; callers decide whether a failure is fatal. When no SMTP host is
    configured, messages are logged instead of sent (development mode).
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
        from_name: str = "Murmur",
        base_url: Optional[str] = None,
        log_previews: bool = True,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.log_previews = log_previews

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, body_html: str) -> str:
        return _HTML_TEMPLATE.format(title=title, body=body_html, sender=self.from_name)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=(text_body or "")[:300] if self.log_previews else None,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # OSError covers refused connections and socket timeouts
            logger.error(
                "email_transport_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str, *, ttl_minutes: int = 15) -> bool:
        """Send the email verification link."""
        verify_url = f"{self.base_url}/v1/auth/verify-email/{token}"
        subject = f"Verify your {self.from_name} email"
        html_body = self._render(
            "Verify your email",
            f'<p>Confirm your address by opening this link:</p>'
            f'<p><a href="{verify_url}">{verify_url}</a></p>'
            f"<p>This link expires in {ttl_minutes} minutes.</p>",
        )
        text_body = (
            f"Verify your {self.from_name} email\n\n"
            f"Confirm your address by visiting:\n\n{verify_url}\n\n"
            f"This link expires in {ttl_minutes} minutes.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_code(self, to_email: str, code: str, *, ttl_minutes: int = 10) -> bool:
        """Send a one-time sign-in code."""
        subject = f"Your {self.from_name} sign-in code"
        html_body = self._render(
            "Your sign-in code",
            f'<p class="code">{code}</p>'
            f"<p>The code expires in {ttl_minutes} minutes. If you did not try to sign in, change your password.</p>",
        )
        text_body = (
            f"Your {self.from_name} sign-in code is {code}\n\n"
            f"It expires in {ttl_minutes} minutes. If you did not try to sign in, change your password.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        """Send confirmation that two-factor authentication was enabled."""
        subject = "Two-factor authentication enabled"
        html_body = self._render(
            "Two-factor authentication enabled",
            "<p>From now on a code will be emailed to you each time you sign in.</p>"
            "<p>If you didn't make this change, please contact support immediately.</p>",
        )
        text_body = (
            "Two-factor authentication enabled\n\n"
            "From now on a code will be emailed to you each time you sign in.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
