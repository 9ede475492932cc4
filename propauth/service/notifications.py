from __future__ import annotations

import asyncio
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from propauth.config import Settings
from propauth.logging import get_logger, mask_phone

logger = get_logger(__name__)


class Notifier(Protocol):
    """Delivery of codes and links; transport details stay behind this seam."""

    async def send_otp(
        self, phone: str, code: str, *, purpose: str, expires_at: datetime
    ) -> bool: ...

    async def send_email_verification(self, email: str, token: str) -> bool: ...

    async def send_password_reset(self, email: str, token: str) -> bool: ...


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP delivery for verification and reset links.

    When no SMTP host is configured the message is logged (subject and
    recipient only) instead of sent, so local setups work without a relay.
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
        from_name: str = "PropAuth",
        base_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", recipient=_redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=_redact_email(to_email),
                host=self.smtp_host,
                smtp_code=exc.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=_redact_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                recipient=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=_redact_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        body = (
            "We received a request to reset your password.\n\n"
            f"Choose a new password here:\n\n{reset_url}\n\n"
            f"This link expires in {ttl_minutes} minutes. "
            "If you didn't request this, you can ignore this email.\n"
        )
        return self._send_email(to_email, "Reset your password", body)

    def send_email_verification(self, to_email: str, token: str, *, ttl_hours: int) -> bool:
        verify_url = f"{self.base_url}/v1/auth/verify-email?token={token}"
        body = (
            "Welcome! Confirm your email address to activate your account:\n\n"
            f"{verify_url}\n\n"
            f"This link expires in {ttl_hours} hours.\n"
        )
        return self._send_email(to_email, "Verify your email address", body)


class SmsGateway:
    """HTTP SMS gateway client; logs instead of sending when unconfigured."""

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        sender_id: str = "PROPAUTH",
        timeout: float = 10.0,
    ) -> None:
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url and self.api_key)

    async def send(self, phone: str, message: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", recipient=mask_phone(phone), length=len(message))
            return True
        payload = {"to": phone, "from": self.sender_id, "message": message}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                response = await client.post(self.gateway_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                recipient=mask_phone(phone),
                status=exc.response.status_code,
            )
            return False
        except httpx.TimeoutException:
            logger.error("sms_gateway_timeout", recipient=mask_phone(phone))
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_gateway_failed",
                recipient=mask_phone(phone),
                error_type=type(exc).__name__,
            )
            return False
        logger.info("sms_sent", recipient=mask_phone(phone))
        return True


class NotificationService:
    """Default Notifier: SMTP for links, the SMS gateway for codes."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            timeout=settings.notification_timeout_seconds,
        )
        self.sms = SmsGateway(
            gateway_url=settings.sms_gateway_url,
            api_key=settings.sms_api_key,
            sender_id=settings.sms_sender_id,
            timeout=settings.notification_timeout_seconds,
        )

    async def send_otp(
        self, phone: str, code: str, *, purpose: str, expires_at: datetime
    ) -> bool:
        minutes = self.settings.otp_ttl_minutes
        message = f"Your verification code is {code}. It expires in {minutes} minutes."
        return await self.sms.send(phone, message)

    async def send_email_verification(self, email: str, token: str) -> bool:
        return await asyncio.to_thread(
            self.email.send_email_verification,
            email,
            token,
            ttl_hours=self.settings.email_verification_ttl_hours,
        )

    async def send_password_reset(self, email: str, token: str) -> bool:
        return await asyncio.to_thread(
            self.email.send_password_reset,
            email,
            token,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
