from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from accountcore.config import Settings
from accountcore.logging import get_logger
from accountcore.storage.models import Account

logger = get_logger(__name__)


class EmailDispatcher(Protocol):
    """Outbound delivery of lifecycle links.

    Each method returns whether the message was handed off; delivery
    problems are reported through the return value, never raised.
    """

    def send_verification(self, account: Account, token: str) -> bool: ...

    def send_password_reset(self, account: Account, token: str) -> bool: ...

    def send_email_change_verification(self, account: Account, token: str) -> bool: ...


_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f6fde; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>Hi {username},</p>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>This link expires in {lifetime}.</p>
        <p>{closing}</p>
        <div class="footer">
            <p>{product}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

Hi {username},

{intro}

{url}

This link expires in {lifetime}.

{closing}

---
{product}
"""


def _describe(hours: float) -> str:
    if hours < 1:
        minutes = int(hours * 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    whole = int(hours)
    return f"{whole} hour{'s' if whole != 1 else ''}"


class EmailService:
    """SMTP delivery for verification and password reset links.

    When no SMTP host is configured the message is logged instead of sent
    and reported as delivered (dev mode).
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
        from_name: str = "AccountCore",
        base_url: Optional[str] = None,
        verification_ttl_hours: float = 24,
        reset_ttl_hours: float = 1,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_hours = reset_ttl_hours

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            verification_ttl_hours=settings.verification_ttl.total_seconds() / 3600,
            reset_ttl_hours=settings.reset_ttl.total_seconds() / 3600,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_address(self, address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, recipient: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message. Returns True when the SMTP server accepted it."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_address(recipient),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                user=self.smtp_user,
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=self._redact_address(recipient))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_address(recipient),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # OSError covers refused connections and socket timeouts
            logger.error(
                "email_transport_error",
                recipient=self._redact_address(recipient),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_address(recipient), subject=subject)
        return True

    def _send_link(
        self,
        account: Account,
        *,
        subject: str,
        heading: str,
        intro: str,
        action: str,
        url: str,
        lifetime_hours: float,
        closing: str,
    ) -> bool:
        if not account.email:
            logger.warning("email_no_recipient", account_id=account.id, subject=subject)
            return False
        fields = {
            "heading": heading,
            "username": account.username,
            "intro": intro,
            "action": action,
            "url": url,
            "lifetime": _describe(lifetime_hours),
            "closing": closing,
            "product": self.from_name,
        }
        # Usernames are user-chosen; only the HTML part interprets markup
        html_fields = {key: html.escape(value) for key, value in fields.items()}
        return self._deliver(
            account.email,
            subject,
            _HTML_TEMPLATE.format(**html_fields),
            _TEXT_TEMPLATE.format(**fields),
        )

    def send_verification(self, account: Account, token: str) -> bool:
        return self._send_link(
            account,
            subject=f"Verify your {self.from_name} email",
            heading="Verify your email",
            intro="Thanks for signing up! Please confirm this address by following the link below.",
            action="Verify Email",
            url=f"{self.base_url}/verify-email?token={token}",
            lifetime_hours=self.verification_ttl_hours,
            closing="If you didn't create an account, you can ignore this email.",
        )

    def send_password_reset(self, account: Account, token: str) -> bool:
        return self._send_link(
            account,
            subject=f"Reset your {self.from_name} password",
            heading="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            action="Reset Password",
            url=f"{self.base_url}/reset-password?token={token}",
            lifetime_hours=self.reset_ttl_hours,
            closing="If you didn't request this, you can safely ignore this email.",
        )

    def send_email_change_verification(self, account: Account, token: str) -> bool:
        return self._send_link(
            account,
            subject=f"Confirm your new {self.from_name} email",
            heading="Confirm your new email address",
            intro="Your account's email address was changed to this one. Please confirm it by following the link below.",
            action="Confirm Email",
            url=f"{self.base_url}/verify-email?token={token}",
            lifetime_hours=self.verification_ttl_hours,
            closing="If you didn't make this change, reset your password right away.",
        )


__all__ = ["EmailDispatcher", "EmailService"]
