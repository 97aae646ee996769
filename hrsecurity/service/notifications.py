from __future__ import annotations

import asyncio
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Protocol

from hrsecurity.logging import get_logger
from hrsecurity.storage.models import Account

logger = get_logger(__name__)


class Notifier(Protocol):
    """Outbound security notices. Delivery is best-effort; False means not sent."""

    async def account_locked(self, account: Account, locked_until: datetime) -> bool: ...

    async def password_changed(self, account: Account) -> bool: ...

    async def mfa_disabled(self, account: Account) -> bool: ...


class EmailNotifier:
    """Security notices over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Lockout, password change, and MFA removal notices
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "HeadOfficeOS Security",
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
    def _redact_email(email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _compose(self, to_email: str, subject: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(f"<p>{escape(text_body)}</p>".replace("\n", "<br>"), "html"))
        return msg

    def _open_smtp(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            # Dev mode: the notice only goes to the log
            logger.info(
                "security_notice_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = self._compose(to_email, subject, text_body)
        try:
            with self._open_smtp() as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPException as e:
            logger.error(
                "security_notice_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "security_notice_transport_error",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
            )
            return False

        logger.info("security_notice_sent", to=recipient, subject=subject)
        return True

    async def _deliver(self, to_email: str, subject: str, text_body: str) -> bool:
        return await asyncio.to_thread(self._send_email, to_email, subject, text_body)

    async def account_locked(self, account: Account, locked_until: datetime) -> bool:
        return await self._deliver(
            account.email,
            "Your account has been temporarily locked",
            "We locked your account after several failed sign-in attempts.\n"
            f"You can try again after {locked_until.strftime('%Y-%m-%d %H:%M UTC')}.\n"
            "If this was not you, contact your HR administrator.",
        )

    async def password_changed(self, account: Account) -> bool:
        return await self._deliver(
            account.email,
            "Your password was changed",
            "The password for your account was just changed.\n"
            "If you did not make this change, contact your HR administrator immediately.",
        )

    async def mfa_disabled(self, account: Account) -> bool:
        return await self._deliver(
            account.email,
            "Two-factor authentication was turned off",
            "Two-factor authentication has been disabled on your account.\n"
            "If you did not make this change, contact your HR administrator immediately.",
        )
