from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional, Protocol

from authcore.logging import get_logger, mask_email

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_new_device_alert(
        self,
        to_email: str,
        *,
        device_info: Dict[str, Any],
        ip_address: Optional[str],
        timestamp: datetime,
    ) -> bool: ...

    def send_verification_email(self, to_email: str, token: str) -> bool: ...

    def send_password_changed_email(self, to_email: str) -> bool: ...

    def send_password_reset_email(self, to_email: str, token: str) -> bool: ...


async def send_best_effort(kind: str, send: Callable[..., bool], *args, **kwargs) -> bool:
    """Run a blocking notifier call off the event loop; failures are logged, never raised."""
    try:
        delivered = await asyncio.to_thread(send, *args, **kwargs)
    except Exception as exc:
        logger.warning("notification_failed", kind=kind, error=str(exc))
        return False
    if not delivered:
        logger.warning("notification_not_delivered", kind=kind)
    return bool(delivered)


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {paragraphs}
        {button}
        <div class="footer">
            <p>{brand}</p>
            {footer_link}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP delivery of account-security notifications.

    When SMTP is not configured (local development, tests) messages are
    logged instead of sent and reported as delivered.
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
        from_name: str = "AuthCore",
        base_url: Optional[str] = None,
        password_reset_ttl_minutes: int = 60,
        email_verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.password_reset_ttl_minutes = password_reset_ttl_minutes
        self.email_verification_ttl_hours = email_verification_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(
        self,
        title: str,
        paragraphs: List[str],
        *,
        link: Optional[str] = None,
        link_label: Optional[str] = None,
    ) -> tuple[str, str]:
        """Build matching HTML and plain-text bodies."""
        html_paragraphs = "\n        ".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        button = ""
        footer_link = ""
        if link:
            safe_link = html.escape(link, quote=True)
            button = (
                f'<p style="margin: 30px 0;"><a href="{safe_link}" class="button">'
                f"{html.escape(link_label or 'Open')}</a></p>"
            )
            footer_link = (
                f"<p>If the button doesn't work, copy and paste this URL: {safe_link}</p>"
            )
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            paragraphs=html_paragraphs,
            button=button,
            brand=html.escape(self.from_name),
            footer_link=footer_link,
        )
        text_parts = [title, ""] + paragraphs
        if link:
            text_parts += ["", link]
        text_parts += ["", "---", self.from_name]
        return html_body, "\n".join(text_parts) + "\n"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def send_new_device_alert(
        self,
        to_email: str,
        *,
        device_info: Dict[str, Any],
        ip_address: Optional[str],
        timestamp: datetime,
    ) -> bool:
        browser = device_info.get("browser", "Unknown")
        os_name = device_info.get("os", "Unknown")
        html_body, text_body = self._render(
            "New sign-in to your account",
            [
                "Your account was just accessed from a device we have not seen before.",
                f"Device: {browser} on {os_name}",
                f"IP address: {ip_address or 'unknown'}",
                f"Time: {timestamp.strftime('%Y-%m-%d %H:%M UTC')}",
                "If this was you, no action is needed. If not, reset your password "
                "and sign out of all sessions right away.",
            ],
            link=f"{self.base_url}/account/sessions",
            link_label="Review sessions",
        )
        return self._send_email(to_email, "New sign-in detected", html_body, text_body)

    def send_verification_email(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Please confirm your email address to finish setting up your account.",
                f"This link will expire in {self.email_verification_ttl_hours} hours.",
            ],
            link=f"{self.base_url}/verify-email?token={token}",
            link_label="Verify email",
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_password_changed_email(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your account was just changed and all other "
                "sessions were signed out.",
                "If you didn't make this change, contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                f"This link will expire in {self.password_reset_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=f"{self.base_url}/reset-password?token={token}",
            link_label="Reset password",
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)


__all__ = ["Notifier", "EmailService", "send_best_effort"]
