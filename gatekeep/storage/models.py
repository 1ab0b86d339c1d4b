from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from gatekeep.storage.errors import MalformedDocument

USERS = "users"
USER_CLAIMS = "user_claims"
USER_CREDENTIALS = "user_credentials"
USER_OTPS = "user_otps"
USER_SESSIONS = "user_sessions"
USER_ACTIVITY = "user_activity"


class BatchOpType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Document:
    id: str
    data: Dict[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass
class QueryFilter:
    field: str
    operator: str  # "==", "!=", ">", ">=", "<", "<=", "in", "not-in", "array-contains"
    value: Any


@dataclass
class QueryOptions:
    filters: List[QueryFilter] = field(default_factory=list)
    order_by: Optional[str] = None
    order_dir: str = "asc"
    limit: int = 0
    offset: int = 0


@dataclass
class BatchOperation:
    type: str
    collection: str
    document_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def create(
        cls, collection: str, data: Dict[str, Any], document_id: Optional[str] = None
    ) -> "BatchOperation":
        return cls(BatchOpType.CREATE.value, collection, document_id, data)

    @classmethod
    def update(
        cls, collection: str, document_id: str, data: Dict[str, Any]
    ) -> "BatchOperation":
        return cls(BatchOpType.UPDATE.value, collection, document_id, data)

    @classmethod
    def delete(cls, collection: str, document_id: str) -> "BatchOperation":
        return cls(BatchOpType.DELETE.value, collection, document_id)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _read_datetime(doc: Document, collection: str, key: str, *, required: bool = True):
    raw = doc.data.get(key)
    if raw is None:
        if required:
            raise MalformedDocument(collection, doc.id, key)
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, str):
        try:
            return as_utc(datetime.fromisoformat(raw))
        except ValueError:
            pass
    raise MalformedDocument(collection, doc.id, key)


def _read_str(doc: Document, collection: str, key: str, *, required: bool = True):
    raw = doc.data.get(key)
    if raw is None and not required:
        return None
    if not isinstance(raw, str):
        raise MalformedDocument(collection, doc.id, key)
    return raw


def _read_bool(doc: Document, collection: str, key: str, default: bool) -> bool:
    raw = doc.data.get(key, default)
    if not isinstance(raw, bool):
        raise MalformedDocument(collection, doc.id, key)
    return raw


CLAIMS_SCHEMA_VERSION = 1

# Names owned by the token envelope; custom claims may not shadow them
RESERVED_CLAIM_NAMES = frozenset(
    {"iss", "sub", "aud", "exp", "iat", "nbf", "jti", "uid", "claims"}
)


@dataclass
class Claims:
    """Authorization attributes bound to a token or session.

    ``extra`` carries claims this schema version does not model so they
    survive a round trip through the store.
    """

    role: str = "user"
    permissions: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = CLAIMS_SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "role": self.role,
                "permissions": list(self.permissions),
                "schema_version": self.schema_version,
            }
        )
        return payload

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "Claims":
        data = dict(raw or {})
        role = data.pop("role", "user")
        permissions = data.pop("permissions", None) or []
        version = data.pop("schema_version", CLAIMS_SCHEMA_VERSION)
        if not isinstance(role, str):
            raise ValueError("claims role must be a string")
        if isinstance(permissions, str) or not isinstance(permissions, (list, tuple)):
            raise ValueError("claims permissions must be a list of strings")
        return cls(
            role=role,
            permissions=[str(p) for p in permissions],
            extra=data,
            schema_version=int(version),
        )

    def reserved_names(self) -> List[str]:
        return sorted(RESERVED_CLAIM_NAMES.intersection(self.extra))


@dataclass
class UserIdentity:
    id: str
    email: str
    display_name: Optional[str] = None
    phone_number: Optional[str] = None
    photo_url: Optional[str] = None
    disabled: bool = False
    email_verified: bool = False
    claims: Optional[Claims] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Document) -> "UserIdentity":
        raw_claims = doc.data.get("custom_claims")
        try:
            claims = Claims.from_dict(raw_claims) if raw_claims else None
        except (TypeError, ValueError) as exc:
            raise MalformedDocument(USERS, doc.id, "custom_claims") from exc
        return cls(
            id=doc.id,
            email=_read_str(doc, USERS, "email"),
            display_name=_read_str(doc, USERS, "display_name", required=False),
            phone_number=_read_str(doc, USERS, "phone_number", required=False),
            photo_url=_read_str(doc, USERS, "photo_url", required=False),
            disabled=_read_bool(doc, USERS, "disabled", False),
            email_verified=_read_bool(doc, USERS, "email_verified", False),
            claims=claims,
            created_at=_read_datetime(doc, USERS, "created_at", required=False),
            last_login_at=_read_datetime(doc, USERS, "last_login_at", required=False),
        )


@dataclass
class CreateIdentityRequest:
    email: str
    display_name: Optional[str] = None
    phone_number: Optional[str] = None
    photo_url: Optional[str] = None
    disabled: bool = False
    email_verified: bool = False


@dataclass
class UpdateIdentityRequest:
    email: Optional[str] = None
    display_name: Optional[str] = None
    phone_number: Optional[str] = None
    photo_url: Optional[str] = None
    disabled: Optional[bool] = None
    email_verified: Optional[bool] = None
    claims: Optional[Claims] = None

    def changes(self) -> Dict[str, Any]:
        fields = {
            "email": self.email,
            "display_name": self.display_name,
            "phone_number": self.phone_number,
            "photo_url": self.photo_url,
            "disabled": self.disabled,
            "email_verified": self.email_verified,
        }
        return {key: value for key, value in fields.items() if value is not None}


@dataclass
class OtpRecord:
    id: str
    uid: str
    email: str
    otp: str
    expires_at: datetime
    used: bool = False
    created_at: Optional[datetime] = None
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @classmethod
    def from_document(cls, doc: Document) -> "OtpRecord":
        return cls(
            id=doc.id,
            uid=_read_str(doc, USER_OTPS, "uid"),
            email=_read_str(doc, USER_OTPS, "email"),
            otp=_read_str(doc, USER_OTPS, "otp"),
            expires_at=_read_datetime(doc, USER_OTPS, "expires_at"),
            used=_read_bool(doc, USER_OTPS, "used", False),
            created_at=_read_datetime(doc, USER_OTPS, "created_at", required=False),
            used_at=_read_datetime(doc, USER_OTPS, "used_at", required=False),
        )


@dataclass
class SessionRecord:
    id: str
    uid: str
    email: str
    active: bool
    expires_at: datetime
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    meta: Dict[str, Any] | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return self.active and not self.is_expired(now)

    @classmethod
    def from_document(cls, doc: Document) -> "SessionRecord":
        meta = doc.data.get("meta")
        if meta is not None and not isinstance(meta, dict):
            raise MalformedDocument(USER_SESSIONS, doc.id, "meta")
        return cls(
            id=doc.id,
            uid=_read_str(doc, USER_SESSIONS, "uid"),
            email=_read_str(doc, USER_SESSIONS, "email"),
            active=_read_bool(doc, USER_SESSIONS, "active", False),
            expires_at=_read_datetime(doc, USER_SESSIONS, "expires_at"),
            created_at=_read_datetime(doc, USER_SESSIONS, "created_at", required=False),
            ended_at=_read_datetime(doc, USER_SESSIONS, "ended_at", required=False),
            end_reason=_read_str(doc, USER_SESSIONS, "end_reason", required=False),
            meta=meta,
        )
