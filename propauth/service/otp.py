from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from propauth.config import Settings
from propauth.logging import get_logger, mask_phone
from propauth.service.bounded import call_directory, dispatch
from propauth.service.errors import (
    AuthenticationUnavailable,
    OTPAttemptsExhausted,
    OTPExpired,
    OTPInvalid,
    ValidationError,
)
from propauth.service.notifications import Notifier
from propauth.storage.directory import CredentialDirectory
from propauth.storage.models import OTPHandle, OTPRecord, utcnow

logger = get_logger(__name__)

PURPOSE_LOGIN = "login"
PURPOSE_PHONE_VERIFICATION = "phone_verification"

_PHONE_STRIP = re.compile(r"[\s\-().]")


def normalize_phone(phone: str) -> str:
    """Canonical ``+<digits>`` form; raises ValidationError for anything else."""
    if not isinstance(phone, str):
        raise ValidationError("phone number is required", detail={"field": "phone"})
    cleaned = _PHONE_STRIP.sub("", phone.strip())
    digits = cleaned[1:] if cleaned.startswith("+") else cleaned
    if not digits.isdigit() or not 7 <= len(digits) <= 15:
        raise ValidationError("invalid phone number", detail={"field": "phone"})
    return f"+{digits}"


class OTPManager:
    """Numeric one-time codes for phone login and phone verification.

    Per phone and purpose only the newest code is live. A record is dead
    for good once it is used, has run out of attempts, or has expired.
    """

    def __init__(
        self,
        settings: Settings,
        directory: CredentialDirectory,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.notifier = notifier
        self._clock = clock
        self._pepper = settings.jwt_secret.encode()

    def _hash_code(self, code: str) -> str:
        return hmac.new(self._pepper, code.encode(), hashlib.sha256).hexdigest()

    def _generate_code(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def issue_otp(
        self, phone: str, *, purpose: str = PURPOSE_LOGIN, user_id: Optional[str] = None
    ) -> Tuple[OTPHandle, str]:
        """Persist a fresh code, superseding older unused ones for the phone."""
        phone = normalize_phone(phone)
        now = self._clock()
        code = self._generate_code()
        record = OTPRecord(
            id=str(uuid.uuid4()),
            phone=phone,
            code_hash=self._hash_code(code),
            purpose=purpose,
            user_id=user_id,
            expires_at=now + timedelta(minutes=self.settings.otp_ttl_minutes),
            max_attempts=self.settings.otp_max_attempts,
            created_at=now,
        )
        self.directory.create_otp(record, now)
        logger.info("otp_issued", phone=phone, purpose=purpose, otp_id=record.id)
        handle = OTPHandle(
            otp_id=record.id,
            phone=phone,
            expires_at=record.expires_at,
            attempts_left=record.max_attempts,
        )
        return handle, code

    async def send_otp(
        self, phone: str, *, purpose: str = PURPOSE_LOGIN, user_id: Optional[str] = None
    ) -> OTPHandle:
        """Issue a code and hand it to the notifier; the code is never returned."""
        handle, code = await call_directory(
            self.issue_otp,
            phone,
            purpose=purpose,
            user_id=user_id,
            timeout=self.settings.directory_timeout_seconds,
        )
        delivered = await dispatch(
            self.notifier.send_otp(handle.phone, code, purpose=purpose, expires_at=handle.expires_at),
            timeout=self.settings.notification_timeout_seconds,
            channel="sms",
        )
        if not delivered:
            logger.error("otp_delivery_failed", recipient=mask_phone(handle.phone), purpose=purpose)
            raise AuthenticationUnavailable(
                "could not deliver verification code", detail={"channel": "sms"}
            )
        return handle

    def verify_otp(self, phone: str, code: str, *, purpose: str = PURPOSE_LOGIN) -> OTPRecord:
        phone = normalize_phone(phone)
        now = self._clock()
        record = self.directory.get_latest_otp(phone, purpose)
        if record is None or record.used_at is not None:
            raise OTPInvalid()
        if record.attempts >= record.max_attempts:
            raise OTPAttemptsExhausted()
        if now > record.expires_at:
            raise OTPExpired()

        supplied = (code or "").strip()
        if not hmac.compare_digest(self._hash_code(supplied), record.code_hash):
            attempts = self.directory.increment_otp_attempts(record.id)
            attempts_left = max(0, record.max_attempts - attempts)
            logger.info("otp_mismatch", phone=phone, purpose=purpose, attempts_left=attempts_left)
            raise OTPInvalid(detail={"attempts_left": attempts_left})

        if not self.directory.consume_otp(record.id, now):
            # Another request consumed or exhausted it between read and write
            latest = self.directory.get_latest_otp(phone, purpose)
            if latest is not None and latest.id == record.id and latest.attempts >= latest.max_attempts:
                raise OTPAttemptsExhausted()
            raise OTPInvalid()
        logger.info("otp_verified", phone=phone, purpose=purpose, otp_id=record.id)
        return record
