from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from kanari.config import Settings
from kanari.logging import get_logger
from kanari.service.errors import AuthenticationError, BadRequestError, ConflictError
from kanari.storage.errors import ConstraintViolation
from kanari.storage.models import Session, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_user(self, email: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(self, user_id: str, ttl_minutes: int = ...) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: Optional[str] = None


@dataclass
class IssuedTokens:
    user: User
    session: Session
    access_token: str
    token_type: str = "bearer"


class AuthService:
    """Email/password accounts with HS256 bearer tokens bound to a session."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    async def signup(self, email: str, password: str) -> IssuedTokens:
        normalized = (email or "").strip().lower()
        if "@" not in normalized:
            raise BadRequestError("invalid email address")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise BadRequestError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        try:
            user = self.store.create_user(normalized)
        except ConstraintViolation:
            raise ConflictError("email already registered")
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        logger.info("user_signed_up", user_id=user.id)
        return self._start_session(user)

    async def login(self, email: str, password: str) -> IssuedTokens:
        user = self.store.get_user_by_email((email or "").strip().lower())
        if not user or not user.is_active or not self.verify_password(user.id, password):
            raise AuthenticationError(
                "invalid email or password", error_code="invalid_credentials"
            )
        return self._start_session(user)

    async def logout(self, session_id: str) -> None:
        self.store.revoke_session(session_id)
        logger.info("session_revoked", session_id=session_id)

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        session_id = payload.get("sid")
        sess = self.store.get_session(session_id) if session_id else None
        if not sess or sess.revoked:
            return None
        if sess.expires_at <= datetime.utcnow() - self._clock_skew_leeway:
            return None
        if sess.user_id != payload.get("sub"):
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            return None
        return AuthContext(user_id=user.id, session_id=sess.id)

    def _start_session(self, user: User) -> IssuedTokens:
        session = self.store.create_session(
            user.id, ttl_minutes=self.settings.access_token_ttl_minutes
        )
        return IssuedTokens(
            user=user, session=session, access_token=self._issue_access_token(user, session)
        )

    def _issue_access_token(self, user: User, session: Session) -> str:
        now = int(time.time())
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user.id,
                "sid": session.id,
                "jti": str(uuid.uuid4()),
                "token_type": "access",
                "iat": now,
                "exp": now + self.settings.access_token_ttl_minutes * 60,
            }
        )

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header or not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
