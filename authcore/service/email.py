from __future__ import annotations

import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.storage.models import DeviceInfo

logger = get_logger(__name__)


class EmailService:
    """Transactional security notifications.

    Without an SMTP host the service runs in dev mode and only logs that a
    message would have been sent. Send failures are logged and reported as
    ``False``; they never raise to the caller.
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
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

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
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
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

    def _send_email(self, to_email: str, subject: str, text_body: str, *, kind: str) -> bool:
        if not self.is_configured:
            # Bodies carry one-time links, so only the envelope is logged
            logger.info(
                "email_dev_mode", kind=kind, recipient=self._redact_email(to_email), subject=subject
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        html_body = "<br>".join(escape(line) for line in text_body.splitlines())
        msg.attach(MIMEText(f"<html><body><p>{html_body}</p></body></html>", "html"))
        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                kind=kind,
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", kind=kind, recipient=self._redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                kind=kind,
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", kind=kind, recipient=self._redact_email(to_email))
        return True

    def send_password_changed(self, to_email: str, *, changed_at: datetime) -> bool:
        subject = f"Your {self.from_name} password was changed"
        body = (
            f"Your password was changed at {changed_at:%Y-%m-%d %H:%M} UTC.\n"
            "All other sessions have been signed out.\n"
            "If this was not you, reset your password immediately."
        )
        return self._send_email(to_email, subject, body, kind="password_changed")

    def send_new_device_login(self, to_email: str, device: DeviceInfo) -> bool:
        subject = f"New sign-in to your {self.from_name} account"
        body = (
            "A new device signed in to your account.\n"
            f"Device: {device.name}\n"
            f"Browser: {device.browser}\n"
            f"Location: {device.location}\n"
            "If this was not you, sign out all devices and change your password."
        )
        return self._send_email(to_email, subject, body, kind="new_device_login")

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int) -> bool:
        subject = f"Reset your {self.from_name} password"
        body = (
            "Use the link below to choose a new password:\n"
            f"{self.base_url}/reset-password?token={token}\n"
            f"The link expires in {ttl_minutes} minutes."
        )
        return self._send_email(to_email, subject, body, kind="password_reset")

    def send_email_verification(self, to_email: str, token: str, *, ttl_hours: int) -> bool:
        subject = f"Verify your {self.from_name} email address"
        body = (
            "Confirm your email address to activate your account:\n"
            f"{self.base_url}/verify-email?token={token}\n"
            f"The link expires in {ttl_hours} hours."
        )
        return self._send_email(to_email, subject, body, kind="email_verification")
