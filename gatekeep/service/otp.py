from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import RedisError

from gatekeep.config import Settings
from gatekeep.deadline import Deadline, check_deadline
from gatekeep.logging import get_logger, redact_email
from gatekeep.service.directory import Directory
from gatekeep.service.errors import (
    OtpExpiredError,
    OtpInvalidError,
    UserNotFoundError,
    store_guard,
)
from gatekeep.service.notifier import OtpNotifier
from gatekeep.storage.common import DocumentStore
from gatekeep.storage.models import USER_OTPS, OtpRecord, QueryFilter, QueryOptions
from gatekeep.storage.redis_cache import RedisCache

logger = get_logger(__name__)

OTP_DIGITS = "0123456789"
INVALID_OTP_MESSAGE = "Invalid or unknown OTP."
EXPIRED_OTP_MESSAGE = "OTP has expired."


class OtpEngine:
    """Issue and consume one-time passcodes.

    A code is consumed at most once: the ``used`` flag flips through the
    store's conditional update, so concurrent consumers of the same record
    see exactly one success. Records are never deleted here; purging old
    ones is the retention reaper's job.
    """

    def __init__(
        self,
        store: DocumentStore,
        directory: Directory,
        settings: Settings,
        *,
        notifier: Optional[OtpNotifier] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.settings = settings
        self.notifier = notifier
        self.cache = cache
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def generate_code(self, length: Optional[int] = None) -> str:
        """Return a decimal code; every digit comes from the OS CSPRNG."""
        size = length or self.settings.otp_length
        return "".join(secrets.choice(OTP_DIGITS) for _ in range(size))

    async def request_otp(
        self, email: str, *, deadline: Optional[Deadline] = None
    ) -> OtpRecord:
        identity = self.directory.get_by_email(email, deadline=deadline)
        if identity.disabled:
            # Disabled accounts are indistinguishable from unknown ones
            raise UserNotFoundError("user not found")

        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.otp_ttl_minutes)
        code = self.generate_code()
        data = {
            "uid": identity.id,
            "email": identity.email,
            "otp": code,
            "expires_at": expires_at,
            "used": False,
        }
        with store_guard("create_otp", USER_OTPS):
            otp_id = self.store.create(USER_OTPS, data, deadline=deadline)
            record = OtpRecord.from_document(
                self.store.get(USER_OTPS, otp_id, deadline=deadline)
            )
        self.logger.info(
            "otp_requested",
            uid=identity.id,
            otp_id=otp_id,
            expires_at=expires_at.isoformat(),
        )
        self._deliver(record)
        return record

    def _deliver(self, record: OtpRecord) -> None:
        if self.notifier is None:
            self.logger.warning("otp_notifier_missing", otp_id=record.id)
            return
        try:
            delivered = self.notifier.send_otp(record.email, record.otp, record.expires_at)
        except Exception as exc:
            self.logger.warning(
                "otp_delivery_failed",
                otp_id=record.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not delivered:
            self.logger.warning("otp_delivery_failed", otp_id=record.id)

    def _find_unused(
        self, email: str, code: str, deadline: Optional[Deadline]
    ) -> Optional[OtpRecord]:
        options = QueryOptions(
            filters=[
                QueryFilter("email", "==", email),
                QueryFilter("otp", "==", code),
                QueryFilter("used", "==", False),
            ],
            order_by="created_at",
            order_dir="desc",
            limit=1,
        )
        with store_guard("find_otp", USER_OTPS):
            docs = self.store.query(USER_OTPS, options, deadline=deadline)
            return OtpRecord.from_document(docs[0]) if docs else None

    async def validate_and_consume(
        self, email: str, code: str, *, deadline: Optional[Deadline] = None
    ) -> str:
        """Consume the newest unused record matching ``(email, code)``; return its uid."""
        normalized = (email or "").strip().lower()
        if not normalized or not isinstance(code, str) or not code:
            raise OtpInvalidError(INVALID_OTP_MESSAGE)

        record = self._find_unused(normalized, code, deadline)
        if record is None:
            self.logger.info("otp_rejected", reason="otp_invalid", email=redact_email(normalized))
            raise OtpInvalidError(INVALID_OTP_MESSAGE)

        now = self._now()
        if record.is_expired(now):
            # Expired records stay unused; they are simply never accepted
            self.logger.info("otp_rejected", reason="otp_expired", otp_id=record.id)
            raise OtpExpiredError(EXPIRED_OTP_MESSAGE)

        lock_name = f"otp:{record.id}"
        lock_token = await self._acquire_lock(lock_name)
        if self.cache is not None and lock_token is None:
            self.logger.info("otp_rejected", reason="otp_locked", otp_id=record.id)
            raise OtpInvalidError(INVALID_OTP_MESSAGE)
        try:
            check_deadline(deadline, "validate_and_consume")
            with store_guard("consume_otp", USER_OTPS, record.id):
                consumed = self.store.update_if(
                    USER_OTPS,
                    record.id,
                    {"used": True, "used_at": now},
                    expected={"used": False},
                    deadline=deadline,
                )
        finally:
            if lock_token is not None:
                await self._release_lock(lock_name, lock_token)

        if not consumed:
            self.logger.info("otp_rejected", reason="otp_already_used", otp_id=record.id)
            raise OtpInvalidError(INVALID_OTP_MESSAGE)
        self.logger.info("otp_consumed", uid=record.uid, otp_id=record.id)
        return record.uid

    async def _acquire_lock(self, name: str) -> Optional[str]:
        if self.cache is None:
            return None
        try:
            return await self.cache.acquire_lock(name, ttl_seconds=30)
        except RedisError as exc:
            # The conditional update still guarantees single use
            self.logger.warning("otp_lock_unavailable", lock=name, error=str(exc))
            return ""

    async def _release_lock(self, name: str, token: str) -> None:
        if self.cache is None or not token:
            return
        try:
            await self.cache.release_lock(name, token)
        except RedisError as exc:
            self.logger.warning("otp_lock_release_failed", lock=name, error=str(exc))


__all__ = ["OtpEngine", "INVALID_OTP_MESSAGE", "EXPIRED_OTP_MESSAGE"]
