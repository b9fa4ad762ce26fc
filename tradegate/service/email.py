from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tradegate.logging import get_logger, redact_email

logger = get_logger(__name__)

_HTML_SHELL = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 6px; font-weight: 700; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {content}
        <div class="footer">
            <p>{brand}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for second-factor codes and password resets.

    When SMTP is not configured the message is logged instead of sent, which
    is what development and test runs rely on.
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
        from_name: str = "Tradegate",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, content: str) -> str:
        return _HTML_SHELL.format(title=title, content=content, brand=self.from_name)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            # body is not logged: it carries codes and reset links
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    def send_mfa_code(self, to_email: str, code: str, expiry_minutes: int) -> bool:
        subject = f"Your {self.from_name} verification code"
        html_body = self._render(
            "Your verification code",
            f'<p>Enter this code to finish signing in:</p><p class="code">{code}</p>'
            f"<p>The code expires in {expiry_minutes} minutes.</p>"
            "<p>If you did not try to sign in, change your password.</p>",
        )
        text_body = (
            f"Your verification code is {code}\n\n"
            f"The code expires in {expiry_minutes} minutes.\n\n"
            "If you did not try to sign in, change your password.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = f"Reset your {self.from_name} password"
        html_body = self._render(
            "Reset your password",
            "<p>We received a request to reset your password.</p>"
            f'<p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>'
            f"<p>This link will expire in {ttl_minutes} minutes.</p>"
            "<p>If you didn't request this, you can safely ignore this email.</p>"
            f"<p>If the button doesn't work, copy and paste this URL: {reset_url}</p>",
        )
        text_body = (
            "We received a request to reset your password. Visit the link below:\n\n"
            f"{reset_url}\n\n"
            f"This link will expire in {ttl_minutes} minutes.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_enabled(self, to_email: str) -> bool:
        subject = "Two-factor authentication enabled"
        html_body = self._render(
            subject,
            "<p>Two-factor authentication is now on for your account.</p>"
            "<p>If you didn't make this change, please contact support immediately.</p>",
        )
        text_body = (
            "Two-factor authentication is now on for your account.\n\n"
            "If you didn't make this change, please contact support immediately.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
