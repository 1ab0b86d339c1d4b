from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from gatekeep.config import Settings
from gatekeep.deadline import Deadline
from gatekeep.logging import get_correlation_id, get_logger, set_correlation_id
from gatekeep.service.directory import Directory
from gatekeep.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    ServiceError,
    UserNotFoundError,
)
from gatekeep.service.otp import OtpEngine
from gatekeep.service.passwords import PasswordService
from gatekeep.service.sessions import SessionInfo, SessionManager
from gatekeep.storage.models import Claims, CreateIdentityRequest, UserIdentity

logger = get_logger(__name__)

LOGIN_SUCCESS_MESSAGE = "Login successful"
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials."
USER_NOT_FOUND_MESSAGE = "User not found."
OTP_SENT_MESSAGE = "A one-time code has been sent to your email."


@dataclass
class LoginResult:
    success: bool
    message: str
    user: Optional[UserIdentity] = None
    token: Optional[str] = None
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    claims: Optional[Claims] = None
    reason: Optional[str] = None


@dataclass
class RequestOtpResult:
    success: bool
    message: str
    expires_at: Optional[datetime] = None


class AuthService:
    """Login flows over the OTP engine, password credentials and sessions.

    Expected rejections come back as unsuccessful results carrying a stable
    ``reason``; infrastructure failures raise ``InfrastructureError``.
    """

    def __init__(
        self,
        directory: Directory,
        otp: OtpEngine,
        sessions: SessionManager,
        passwords: PasswordService,
        settings: Settings,
    ) -> None:
        self.directory = directory
        self.otp = otp
        self.sessions = sessions
        self.passwords = passwords
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _ensure_correlation_id() -> None:
        if get_correlation_id() is None:
            set_correlation_id()

    def _rejected(self, flow: str, exc: ServiceError) -> LoginResult:
        self.logger.info("login_rejected", flow=flow, reason=exc.error_code)
        return LoginResult(success=False, message=exc.message, reason=exc.error_code)

    # OTP flow
    async def request_otp(
        self, email: str, *, deadline: Optional[Deadline] = None
    ) -> RequestOtpResult:
        self._ensure_correlation_id()
        try:
            record = await self.otp.request_otp(email, deadline=deadline)
        except UserNotFoundError:
            self.logger.info("otp_request_rejected", reason="user_not_found")
            return RequestOtpResult(success=False, message=USER_NOT_FOUND_MESSAGE)
        return RequestOtpResult(
            success=True, message=OTP_SENT_MESSAGE, expires_at=record.expires_at
        )

    async def login_with_otp(
        self,
        email: str,
        code: str,
        *,
        meta: Optional[Dict[str, Any]] = None,
        deadline: Optional[Deadline] = None,
    ) -> LoginResult:
        self._ensure_correlation_id()
        try:
            uid = await self.otp.validate_and_consume(email, code, deadline=deadline)
        except AuthenticationError as exc:
            return self._rejected("otp", exc)
        try:
            identity = self.directory.get_by_id(uid, deadline=deadline)
        except UserNotFoundError as exc:
            # The identity vanished between issuing and consuming the code
            self.logger.warning("login_user_vanished", uid=uid)
            return LoginResult(
                success=False, message=USER_NOT_FOUND_MESSAGE, reason=exc.error_code
            )
        if identity.disabled:
            return self._rejected("otp", InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE))
        return await self._complete_login(identity, "otp", meta, deadline)

    # password flow
    async def login(
        self,
        email: str,
        password: str,
        *,
        meta: Optional[Dict[str, Any]] = None,
        deadline: Optional[Deadline] = None,
    ) -> LoginResult:
        self._ensure_correlation_id()
        invalid = InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        try:
            identity = self.directory.get_by_email(email, deadline=deadline)
        except UserNotFoundError:
            self.passwords.dummy_verify(password)
            return self._rejected("password", invalid)
        if identity.disabled:
            self.passwords.dummy_verify(password)
            return self._rejected("password", invalid)
        if not self.passwords.verify_password(identity.id, password, deadline=deadline):
            return self._rejected("password", invalid)
        return await self._complete_login(identity, "password", meta, deadline)

    async def _complete_login(
        self,
        identity: UserIdentity,
        flow: str,
        meta: Optional[Dict[str, Any]],
        deadline: Optional[Deadline],
    ) -> LoginResult:
        claims = self.directory.get_claims(identity.id, deadline=deadline) or Claims(
            role=self.settings.default_role
        )
        token = self.directory.mint_token(identity.id, claims)
        session_meta = dict(meta or {})
        session_meta.setdefault("login_method", flow)
        session = await self.sessions.create_session(
            identity.id, identity.email, session_meta, deadline=deadline
        )
        now = self._now()
        try:
            self.directory.record_login(identity.id, now, deadline=deadline)
            identity.last_login_at = now
        except Exception as exc:
            # The session already exists; bookkeeping must not turn it into a failure
            self.logger.warning(
                "last_login_update_failed",
                uid=identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        self.logger.info(
            "login_succeeded", flow=flow, uid=identity.id, session_id=session.id
        )
        return LoginResult(
            success=True,
            message=LOGIN_SUCCESS_MESSAGE,
            user=identity,
            token=token,
            session_id=session.id,
            expires_at=session.expires_at,
            claims=claims,
        )

    # sessions
    async def logout(self, session_id: str, *, deadline: Optional[Deadline] = None) -> None:
        await self.sessions.logout(session_id, deadline=deadline)

    async def validate_session(
        self, session_id: str, *, deadline: Optional[Deadline] = None
    ) -> SessionInfo:
        return await self.sessions.validate_session(session_id, deadline=deadline)

    async def refresh_session(
        self, session_id: str, *, deadline: Optional[Deadline] = None
    ) -> SessionInfo:
        return await self.sessions.refresh_session(session_id, deadline=deadline)

    # user management
    async def register_user(
        self,
        email: str,
        password: Optional[str] = None,
        display_name: Optional[str] = None,
        claims: Optional[Claims] = None,
        *,
        email_verified: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> UserIdentity:
        if password is not None:
            self.passwords.validate_password(password)
        identity = self.directory.create_identity(
            CreateIdentityRequest(
                email=email, display_name=display_name, email_verified=email_verified
            ),
            deadline=deadline,
        )
        if password is not None:
            self.passwords.save_password(identity.id, password, deadline=deadline)
        self.directory.set_claims(
            identity.id,
            claims or Claims(role=self.settings.default_role),
            deadline=deadline,
        )
        self.logger.info("user_registered", uid=identity.id, with_password=password is not None)
        return self.directory.get_by_id(identity.id, deadline=deadline)

    async def set_password(
        self, uid: str, password: str, *, deadline: Optional[Deadline] = None
    ) -> None:
        self.directory.get_by_id(uid, deadline=deadline)
        self.passwords.save_password(uid, password, deadline=deadline)
        self.logger.info("password_updated", uid=uid)

    async def disable_user(self, uid: str, *, deadline: Optional[Deadline] = None) -> int:
        """Disable the identity and end all of its sessions; returns sessions ended."""
        self.directory.disable(uid, deadline=deadline)
        return await self.sessions.revoke_all_for_user(uid, deadline=deadline)

    async def enable_user(self, uid: str, *, deadline: Optional[Deadline] = None) -> None:
        self.directory.enable(uid, deadline=deadline)


__all__ = [
    "AuthService",
    "LoginResult",
    "RequestOtpResult",
    "LOGIN_SUCCESS_MESSAGE",
    "INVALID_CREDENTIALS_MESSAGE",
    "USER_NOT_FOUND_MESSAGE",
    "OTP_SENT_MESSAGE",
]
