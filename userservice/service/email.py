from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from userservice.logging import get_logger

logger = get_logger(__name__)

_HTML_LAYOUT = """<!DOCTYPE html>
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
        <h1>{heading}</h1>
        {body}
        <div class="footer">
            <p>{app_name}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Sends the account notifications issued by ``AuthService``.

    Implements the notifier contract: verification links, password reset
    links, and password-changed notices. Without SMTP settings it logs the
    message instead of sending (dev mode). Delivery failures are logged and
    reported as ``False``; they never raise.
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
        from_name: str = "User Service",
        base_url: Optional[str] = None,
        app_name: str = "User Service",
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.app_name = app_name
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        """SMTP host and sender address are both set."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self, heading: str, paragraphs: list[str], *, link: Optional[tuple[str, str]] = None
    ) -> tuple[str, str]:
        """Build the (html, text) bodies for a message."""
        html_parts = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        text_parts = [heading, ""] + [p + "\n" for p in paragraphs]
        footer = ""
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            html_parts.insert(
                1,
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{html.escape(label)}</a></p>',
            )
            text_parts.insert(3, url + "\n")
            footer = f"<p>If the button doesn't work, copy and paste this URL: {safe_url}</p>"
        html_body = _HTML_LAYOUT.format(
            heading=html.escape(heading),
            body="\n        ".join(html_parts),
            app_name=html.escape(self.app_name),
            footer=footer,
        )
        text_body = "\n".join(text_parts) + f"\n---\n{self.app_name}\n"
        return html_body, text_body

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        server.starttls(context=context)
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; ``False`` means SMTP rejected or was unreachable."""
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            preview = (text_body or html_body)[:200]
            logger.info("email_dev_mode", to=recipient, subject=subject, body_preview=preview)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def notify_verification(self, to_email: str, username: str, token: str) -> bool:
        verify_url = f"{self.base_url}/v1/auth/verify-email?token={quote(token)}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                f"Hi {username}, thanks for signing up! Please confirm your email address.",
                f"This link will expire in {self.verification_ttl_hours} hours.",
            ],
            link=("Verify Email", verify_url),
        )
        return self._send_email(
            to_email, f"Verify your {self.app_name} email", html_body, text_body
        )

    def notify_password_reset(self, to_email: str, username: str, token: str) -> bool:
        reset_url = f"{self.base_url}/?reset_token={quote(token)}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                f"Hi {username}, we received a request to reset your password. "
                "Use the link below to choose a new one.",
                f"This link will expire in {self.reset_ttl_minutes} minutes. "
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", reset_url),
        )
        return self._send_email(
            to_email, f"Reset your {self.app_name} password", html_body, text_body
        )

    def notify_password_changed(self, to_email: str, username: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                f"Hi {username}, the password for your {self.app_name} account was just changed "
                "and all other sessions were signed out.",
                "If you didn't make this change, reset your password and contact support immediately.",
            ],
        )
        return self._send_email(
            to_email, f"Your {self.app_name} password was changed", html_body, text_body
        )
