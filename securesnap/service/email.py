from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Iterable, Optional

from securesnap.logging import get_logger, redact_email

logger = get_logger(__name__)

SECURITY_ALERTS = {
    "NEW_DEVICE": "A new device was added to your account",
    "PASSWORD_CHANGED": "Your password was changed",
    "TWO_FACTOR_ENABLED": "Two-factor authentication was enabled",
    "TWO_FACTOR_DISABLED": "Two-factor authentication was disabled",
    "LOW_BACKUP_CODES": "You are running low on two-factor backup codes",
}


class EmailService:
    """Transactional mail for the auth flows.

    When SMTP is not configured, messages are logged instead of sent so local
    development still shows magic links. Delivery failures are logged and
    reported as ``False``; callers never block a login on email.
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
        from_name: str = "SecureSnap",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

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
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _render(self, heading: str, paragraphs: Iterable[str], *, action: Optional[tuple[str, str]] = None) -> str:
        parts = [f"<h1>{escape(heading)}</h1>"]
        parts.extend(f"<p>{p}</p>" for p in paragraphs)
        if action:
            label, url = action
            parts.append(
                f'<p style="margin: 30px 0;"><a href="{escape(url)}" class="button">{escape(label)}</a></p>'
            )
        body = "\n        ".join(parts)
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #4CAF50; color: white; padding: 12px 24px; border-radius: 4px; text-decoration: none; }}
        .codes {{ background: #f5f5f5; padding: 20px; font-family: monospace; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #666; }}
    </style>
</head>
<body>
    <div class="container">
        {body}
        <div class="footer"><p>SecureSnap</p></div>
    </div>
</body>
</html>
"""

    @staticmethod
    def _greeting(name: Optional[str]) -> str:
        return f"Hi {name}," if name else "Hi,"

    def send_welcome(self, to_email: str, name: Optional[str]) -> bool:
        subject = "Welcome to SecureSnap"
        login_url = f"{self.base_url}/login"
        html_body = self._render(
            self._greeting(name),
            [
                "Your SecureSnap account is ready.",
                "Turn on two-factor authentication in Settings to keep your photos safe.",
            ],
            action=("Sign in", login_url),
        )
        text_body = (
            f"{self._greeting(name)}\n\nYour SecureSnap account is ready.\n\n"
            f"Sign in: {login_url}\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_magic_link(
        self, to_email: str, name: Optional[str], link: str, ttl_minutes: int
    ) -> bool:
        subject = "Your SecureSnap sign-in link"
        html_body = self._render(
            self._greeting(name),
            [
                "Click the button below to sign in to SecureSnap.",
                f"This link expires in {ttl_minutes} minutes and can be used once.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            action=("Sign in to SecureSnap", link),
        )
        text_body = (
            f"{self._greeting(name)}\n\nSign in to SecureSnap:\n\n{link}\n\n"
            f"This link expires in {ttl_minutes} minutes and can be used once.\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_backup_codes(
        self, to_email: str, name: Optional[str], backup_codes: list[str]
    ) -> bool:
        subject = "Your SecureSnap 2FA Backup Codes"
        codes_html = "".join(f"<div>{escape(code)}</div>" for code in backup_codes)
        html_body = self._render(
            self._greeting(name),
            [
                "Two-factor authentication is on. Keep these backup codes somewhere safe; each works once:",
                f'<div class="codes">{codes_html}</div>',
                "Generate new codes after using any of these.",
            ],
        )
        text_body = (
            f"{self._greeting(name)}\n\nYour backup codes (each works once):\n\n"
            + "\n".join(backup_codes)
            + "\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_security_alert(
        self, to_email: str, name: Optional[str], alert_type: str, details: Optional[str] = None
    ) -> bool:
        headline = SECURITY_ALERTS.get(alert_type, "Security activity on your account")
        subject = f"SecureSnap security alert: {headline}"
        paragraphs = [escape(headline) + "."]
        if details:
            paragraphs.append(escape(details))
        paragraphs.append("If this wasn't you, change your password immediately.")
        html_body = self._render(self._greeting(name), paragraphs)
        text_body = f"{self._greeting(name)}\n\n{headline}.\n\n{details or ''}\n"
        return self._send_email(to_email, subject, html_body, text_body)
