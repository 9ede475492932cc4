from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from propauth.config import Settings
from propauth.logging import get_logger
from propauth.service.errors import TokenExpired, TokenInvalid, TokenRevoked
from propauth.storage.directory import CredentialDirectory
from propauth.storage.models import AuthContext, RefreshTokenRecord, User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def hash_token(token: str) -> str:
    """Digest under which refresh and one-time tokens are stored."""
    return hashlib.sha256(token.encode()).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenManager:
    """Issues and validates HS256 access and refresh tokens.

    Access tokens are never stored. Refresh tokens are persisted as a
    sha256 digest together with their family id, so a presented token that
    was already rotated away can be traced back to every session it spawned.
    """

    def __init__(
        self,
        settings: Settings,
        directory: CredentialDirectory,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self._clock = clock
        self._secret = settings.jwt_secret.encode()
        self._skew = timedelta(seconds=settings.clock_skew_seconds)

    def _now(self) -> datetime:
        # Whole seconds so that ``exp`` and the returned expiry agree exactly
        return self._clock().replace(microsecond=0)

    # -- encoding ------------------------------------------------------------

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, expected_type: str) -> Dict[str, Any]:
        """Check signature and static claims; expiry is left to the caller."""
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid()
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid()
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalid()
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid()
        if payload.get("aud") != self.settings.jwt_audience:
            raise TokenInvalid()
        if payload.get("typ") != expected_type:
            raise TokenInvalid()
        if not payload.get("sub") or not payload.get("jti"):
            raise TokenInvalid()
        for claim in ("iat", "exp"):
            if not isinstance(payload.get(claim), int):
                raise TokenInvalid()
        return payload

    def _check_times(self, payload: Dict[str, Any], now: datetime) -> None:
        issued_at = datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
        not_before = datetime.fromtimestamp(payload.get("nbf", payload["iat"]), tz=timezone.utc)
        if issued_at > now + self._skew or not_before > now + self._skew:
            raise TokenInvalid("token not yet valid")
        if now > datetime.fromtimestamp(payload["exp"], tz=timezone.utc):
            raise TokenExpired()

    # -- access tokens -------------------------------------------------------

    def issue_access_token(self, user: User, session_id: str) -> Tuple[str, datetime]:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "typ": ACCESS,
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "agency_id": user.agency_id,
            "sid": session_id,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def validate_access_token(self, token: str) -> AuthContext:
        payload = self._decode_jwt(token, ACCESS)
        self._check_times(payload, self._clock())
        if not payload.get("sid") or not payload.get("role"):
            raise TokenInvalid()
        return AuthContext(
            user_id=payload["sub"],
            email=payload.get("email"),
            role=payload["role"],
            session_id=payload["sid"],
            token_id=payload["jti"],
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            agency_id=payload.get("agency_id"),
        )

    # -- refresh tokens ------------------------------------------------------

    def _build_refresh(
        self,
        user_id: str,
        *,
        family_id: str,
        session_token: Optional[str],
        device_info: Optional[Dict],
        ip: Optional[str],
        ttl: timedelta,
    ) -> Tuple[str, RefreshTokenRecord]:
        now = self._now()
        token_id = str(uuid.uuid4())
        expires_at = now + ttl
        token = self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "typ": REFRESH,
                "sub": user_id,
                "jti": token_id,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            }
        )
        record = RefreshTokenRecord(
            id=token_id,
            user_id=user_id,
            token_hash=hash_token(token),
            family_id=family_id,
            session_token=session_token,
            issued_at=now,
            expires_at=expires_at,
            device_info=dict(device_info or {}),
            ip=ip,
        )
        return token, record

    def issue_refresh_token(
        self,
        user_id: str,
        device_info: Optional[Dict] = None,
        *,
        session_token: Optional[str] = None,
        ip: Optional[str] = None,
        remember_me: bool = True,
    ) -> Tuple[str, datetime]:
        ttl_minutes = (
            self.settings.refresh_token_ttl_minutes
            if remember_me
            else self.settings.session_ttl_minutes
        )
        token, record = self._build_refresh(
            user_id,
            family_id=str(uuid.uuid4()),
            session_token=session_token,
            device_info=device_info,
            ip=ip,
            ttl=timedelta(minutes=ttl_minutes),
        )
        self.directory.create_refresh_token(record)
        return token, record.expires_at

    def _load_refresh(self, token: str) -> Tuple[Dict[str, Any], RefreshTokenRecord]:
        payload = self._decode_jwt(token, REFRESH)
        self._check_times(payload, self._clock())
        record = self.directory.get_refresh_token_by_hash(hash_token(token))
        if record is None or record.id != payload["jti"] or record.user_id != payload["sub"]:
            raise TokenInvalid()
        if record.revoked_at is not None:
            if record.replaced_by is not None:
                self._revoke_family(record, reason="reuse_detected")
            raise TokenRevoked()
        return payload, record

    def _revoke_family(self, record: RefreshTokenRecord, *, reason: str) -> None:
        now = self._clock()
        sessions = self.directory.revoke_token_family(record.family_id, now)
        closed = self.directory.deactivate_sessions(sessions)
        logger.warning(
            "refresh_token_family_revoked",
            reason=reason,
            user_id=record.user_id,
            family_id=record.family_id,
            sessions_terminated=closed,
        )

    def validate_refresh_token(self, token: str) -> str:
        _payload, record = self._load_refresh(token)
        return record.user_id

    def rotate_refresh_token(self, old_token: str) -> Tuple[str, datetime, RefreshTokenRecord]:
        """Swap a live refresh token for its successor in one atomic step.

        The successor keeps the family, session and lifetime of its
        predecessor. Losing a concurrent rotation race counts as reuse.
        """
        _payload, record = self._load_refresh(old_token)
        token, successor = self._build_refresh(
            record.user_id,
            family_id=record.family_id,
            session_token=record.session_token,
            device_info=record.device_info,
            ip=record.ip,
            ttl=record.expires_at - record.issued_at,
        )
        if not self.directory.rotate_refresh_token(record.token_hash, successor, self._clock()):
            self._revoke_family(record, reason="rotation_race")
            raise TokenRevoked()
        return token, successor.expires_at, successor

    def revoke_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        """Revoke a presented refresh token without validating its expiry."""
        try:
            self._decode_jwt(token, REFRESH)
        except TokenInvalid:
            return None
        token_hash = hash_token(token)
        record = self.directory.get_refresh_token_by_hash(token_hash)
        if record is None:
            return None
        self.directory.revoke_refresh_token(token_hash, self._clock())
        return record
