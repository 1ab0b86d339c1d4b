from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.deadline import Deadline
from gatekeep.logging import get_logger
from gatekeep.service.errors import ValidationError, store_guard
from gatekeep.storage.common import DocumentStore
from gatekeep.storage.errors import DocumentNotFound
from gatekeep.storage.models import USER_CREDENTIALS

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8


class PasswordService:
    """argon2id password credentials stored in ``user_credentials`` by uid."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the user is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("gatekeep-dummy-password")
        self.logger = logger

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    @staticmethod
    def validate_password(password: Optional[str]) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def save_password(
        self, uid: str, password: str, *, deadline: Optional[Deadline] = None
    ) -> None:
        """Hash and save a new password for a user."""
        self.validate_password(password)
        pwd_hash, algo = self._hash_password(password)
        with store_guard("save_password", USER_CREDENTIALS, uid):
            self.store.create_with_id(
                USER_CREDENTIALS,
                uid,
                {"password_hash": pwd_hash, "password_algo": algo},
                deadline=deadline,
            )

    def verify_password(
        self, uid: str, password: str, *, deadline: Optional[Deadline] = None
    ) -> bool:
        """Verify a user's password against the stored hash."""
        with store_guard("get_password", USER_CREDENTIALS, uid):
            try:
                record = self.store.get(USER_CREDENTIALS, uid, deadline=deadline)
            except DocumentNotFound:
                record = None
        if record is None:
            self.logger.warning("password_record_missing", uid=uid)
            self.dummy_verify(password)
            return False
        stored_hash = record.get("password_hash")
        algo = record.get("password_algo")
        if algo != PASSWORD_ALGO or not isinstance(stored_hash, str):
            self.logger.warning("password_algo_mismatch", uid=uid, algo=algo)
            self.dummy_verify(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.info("password_verification_failed", uid=uid)
            return False

    def dummy_verify(self, password: str) -> None:
        """Spend one argon2 verification so unknown users are not distinguishable by timing."""
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except VerificationError:
            pass


__all__ = ["PasswordService", "PASSWORD_ALGO"]
