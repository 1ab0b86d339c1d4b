from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol

from gatekeep.config import Settings
from gatekeep.deadline import Deadline
from gatekeep.logging import get_logger
from gatekeep.service.errors import (
    IdentityExistsError,
    UserNotFoundError,
    ValidationError,
    store_guard,
)
from gatekeep.storage.common import DocumentStore
from gatekeep.storage.errors import DocumentNotFound, MalformedDocument
from gatekeep.storage.models import (
    USER_ACTIVITY,
    USER_CLAIMS,
    USER_CREDENTIALS,
    USERS,
    BatchOperation,
    Claims,
    CreateIdentityRequest,
    QueryFilter,
    QueryOptions,
    UpdateIdentityRequest,
    UserIdentity,
)

logger = get_logger(__name__)


class Directory(Protocol):
    def create_identity(
        self, request: CreateIdentityRequest, *, deadline: Optional[Deadline] = None
    ) -> UserIdentity: ...

    def get_by_id(self, uid: str, *, deadline: Optional[Deadline] = None) -> UserIdentity: ...

    def get_by_email(
        self, email: str, *, deadline: Optional[Deadline] = None
    ) -> UserIdentity: ...

    def get_claims(
        self, uid: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[Claims]: ...

    def set_claims(
        self, uid: str, claims: Claims, *, deadline: Optional[Deadline] = None
    ) -> None: ...

    def mint_token(self, uid: str, claims: Claims) -> str: ...

    def verify_token(self, token: str) -> Optional[dict[str, Any]]: ...

    def disable(self, uid: str, *, deadline: Optional[Deadline] = None) -> None: ...

    def enable(self, uid: str, *, deadline: Optional[Deadline] = None) -> None: ...

    def record_login(
        self, uid: str, at: datetime, *, deadline: Optional[Deadline] = None
    ) -> None: ...


def normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    if "@" not in normalized or normalized.startswith("@") or normalized.endswith("@"):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


class StoreDirectory:
    """Identity directory kept in the document store.

    Identities live in ``users`` keyed by uid, authorization claims in
    ``user_claims`` as ``{"claims": {...}}``, and tokens are HS256 JWTs
    signed with ``settings.jwt_secret``.
    """

    def __init__(self, store: DocumentStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _load(self, uid: str, deadline: Optional[Deadline]) -> UserIdentity:
        with store_guard("get_identity", USERS, uid):
            try:
                doc = self.store.get(USERS, uid, deadline=deadline)
            except DocumentNotFound:
                raise UserNotFoundError(
                    "user not found", detail={"uid": uid}
                ) from None
            return UserIdentity.from_document(doc)

    def _find_by_email(
        self, email: str, deadline: Optional[Deadline]
    ) -> Optional[UserIdentity]:
        options = QueryOptions(
            filters=[QueryFilter("email", "==", email)], limit=1
        )
        with store_guard("get_identity_by_email", USERS):
            docs = self.store.query(USERS, options, deadline=deadline)
            return UserIdentity.from_document(docs[0]) if docs else None

    # identities
    def create_identity(
        self, request: CreateIdentityRequest, *, deadline: Optional[Deadline] = None
    ) -> UserIdentity:
        email = normalize_email(request.email)
        if self._find_by_email(email, deadline) is not None:
            raise IdentityExistsError(
                "email already exists", detail={"field": "email"}
            )
        uid = uuid.uuid4().hex
        data = {
            "email": email,
            "display_name": request.display_name,
            "phone_number": request.phone_number,
            "photo_url": request.photo_url,
            "disabled": request.disabled,
            "email_verified": request.email_verified,
        }
        with store_guard("create_identity", USERS, uid):
            self.store.create_with_id(USERS, uid, data, deadline=deadline)
        self.logger.info("identity_created", uid=uid)
        return self._load(uid, deadline)

    def get_by_id(self, uid: str, *, deadline: Optional[Deadline] = None) -> UserIdentity:
        return self._load(uid, deadline)

    def get_by_email(
        self, email: str, *, deadline: Optional[Deadline] = None
    ) -> UserIdentity:
        try:
            normalized = normalize_email(email)
        except ValidationError:
            raise UserNotFoundError("user not found") from None
        identity = self._find_by_email(normalized, deadline)
        if identity is None:
            raise UserNotFoundError("user not found")
        return identity

    def identity_exists(self, uid: str, *, deadline: Optional[Deadline] = None) -> bool:
        with store_guard("identity_exists", USERS, uid):
            return self.store.exists(USERS, uid, deadline=deadline)

    def identity_exists_by_email(
        self, email: str, *, deadline: Optional[Deadline] = None
    ) -> bool:
        try:
            self.get_by_email(email, deadline=deadline)
        except UserNotFoundError:
            return False
        return True

    def update_identity(
        self,
        uid: str,
        request: UpdateIdentityRequest,
        *,
        deadline: Optional[Deadline] = None,
    ) -> UserIdentity:
        current = self._load(uid, deadline)
        changes = request.changes()
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
            if changes["email"] != current.email:
                other = self._find_by_email(changes["email"], deadline)
                if other is not None and other.id != uid:
                    raise IdentityExistsError(
                        "email already exists", detail={"field": "email"}
                    )
        if changes:
            with store_guard("update_identity", USERS, uid):
                self.store.update(USERS, uid, changes, deadline=deadline)
        if request.claims is not None:
            self.set_claims(uid, request.claims, deadline=deadline)
        return self._load(uid, deadline)

    def delete_identity(self, uid: str, *, deadline: Optional[Deadline] = None) -> None:
        self._load(uid, deadline)
        ops = [
            BatchOperation.delete(USERS, uid),
            BatchOperation.delete(USER_CLAIMS, uid),
            BatchOperation.delete(USER_CREDENTIALS, uid),
            BatchOperation.delete(USER_ACTIVITY, uid),
        ]
        with store_guard("delete_identity", USERS, uid):
            self.store.commit_batch(ops, deadline=deadline)
        self.logger.info("identity_deleted", uid=uid)

    def list_identities(
        self,
        limit: int = 100,
        email_domain: Optional[str] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[UserIdentity]:
        options = QueryOptions(order_by="created_at", order_dir="desc")
        if not email_domain:
            options.limit = limit
        with store_guard("list_identities", USERS):
            docs = self.store.query(USERS, options, deadline=deadline)
            identities = [UserIdentity.from_document(doc) for doc in docs]
        if email_domain:
            suffix = "@" + email_domain.lstrip("@").lower()
            identities = [i for i in identities if i.email.endswith(suffix)]
            if limit and limit > 0:
                identities = identities[:limit]
        return identities

    def count_identities(self, *, deadline: Optional[Deadline] = None) -> int:
        with store_guard("count_identities", USERS):
            return self.store.count(USERS, deadline=deadline)

    def disable(self, uid: str, *, deadline: Optional[Deadline] = None) -> None:
        self._set_disabled(uid, True, deadline)

    def enable(self, uid: str, *, deadline: Optional[Deadline] = None) -> None:
        self._set_disabled(uid, False, deadline)

    def _set_disabled(self, uid: str, disabled: bool, deadline: Optional[Deadline]) -> None:
        with store_guard("set_disabled", USERS, uid):
            try:
                self.store.update(USERS, uid, {"disabled": disabled}, deadline=deadline)
            except DocumentNotFound:
                raise UserNotFoundError("user not found", detail={"uid": uid}) from None
        self.logger.info("identity_disabled" if disabled else "identity_enabled", uid=uid)

    def record_login(
        self, uid: str, at: datetime, *, deadline: Optional[Deadline] = None
    ) -> None:
        ops = [
            BatchOperation.update(USERS, uid, {"last_login_at": at}),
            BatchOperation.create(USER_ACTIVITY, {"uid": uid, "last_login": at}, document_id=uid),
        ]
        with store_guard("record_login", USER_ACTIVITY, uid):
            self.store.commit_batch(ops, deadline=deadline)

    # claims
    def get_claims(
        self, uid: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[Claims]:
        with store_guard("get_claims", USER_CLAIMS, uid):
            try:
                doc = self.store.get(USER_CLAIMS, uid, deadline=deadline)
            except DocumentNotFound:
                return None
            raw = doc.get("claims")
            if raw is None:
                return None
            try:
                return Claims.from_dict(raw)
            except (TypeError, ValueError) as exc:
                raise MalformedDocument(USER_CLAIMS, uid, "claims") from exc

    def set_claims(
        self, uid: str, claims: Claims, *, deadline: Optional[Deadline] = None
    ) -> None:
        self._check_claims(claims)
        payload = claims.to_dict()
        if not self.identity_exists(uid, deadline=deadline):
            raise UserNotFoundError("user not found", detail={"uid": uid})
        ops = [
            BatchOperation.create(USER_CLAIMS, {"claims": payload}, document_id=uid),
            BatchOperation.update(USERS, uid, {"custom_claims": payload}),
        ]
        with store_guard("set_claims", USER_CLAIMS, uid):
            self.store.commit_batch(ops, deadline=deadline)
        self.logger.info("claims_updated", uid=uid, role=claims.role)

    @staticmethod
    def _check_claims(claims: Claims) -> None:
        reserved = claims.reserved_names()
        if reserved:
            raise ValidationError(
                "claims use reserved token names", detail={"reserved": reserved}
            )

    # tokens
    def mint_token(
        self, uid: str, claims: Claims, *, ttl_minutes: Optional[int] = None
    ) -> str:
        self._check_claims(claims)
        now = self._now()
        ttl = self.settings.token_ttl_minutes if ttl_minutes is None else ttl_minutes
        payload = claims.to_dict()
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": uid,
                "uid": uid,
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(minutes=ttl)).timestamp()),
                "jti": str(uuid.uuid4()),
            }
        )
        return self._encode_jwt(payload)

    def verify_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
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
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload


__all__ = ["Directory", "StoreDirectory", "normalize_email"]
