from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from gatekeep.config import Settings
from gatekeep.deadline import Deadline
from gatekeep.logging import get_logger
from gatekeep.service.directory import Directory
from gatekeep.service.errors import (
    InfrastructureError,
    SessionExpiredError,
    SessionInactiveError,
    SessionNotFoundError,
    store_guard,
)
from gatekeep.storage.common import DocumentStore
from gatekeep.storage.errors import DocumentNotFound
from gatekeep.storage.models import (
    USER_SESSIONS,
    BatchOperation,
    Claims,
    QueryFilter,
    QueryOptions,
    SessionRecord,
)

logger = get_logger(__name__)

# Conditional writes retried when a concurrent refresh moved the expiry
REFRESH_ATTEMPTS = 3


@dataclass
class SessionInfo:
    uid: str
    email: str
    active: bool
    claims: Claims
    expires_at: datetime
    session_id: str


class SessionManager:
    """Server-side session records with lazy expiry.

    Records are never deleted; logout, expiry and revocation flip ``active``
    and stamp ``ended_at`` / ``end_reason``. The store is the only source of
    session state.
    """

    def __init__(
        self,
        store: DocumentStore,
        directory: Directory,
        settings: Settings,
    ) -> None:
        self.store = store
        self.directory = directory
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.settings.session_ttl_hours)

    def _load(self, session_id: str, deadline: Optional[Deadline]) -> SessionRecord:
        if not session_id:
            raise SessionNotFoundError("session not found")
        with store_guard("get_session", USER_SESSIONS, session_id):
            try:
                doc = self.store.get(USER_SESSIONS, session_id, deadline=deadline)
            except DocumentNotFound:
                raise SessionNotFoundError(
                    "session not found", detail={"session_id": session_id}
                ) from None
            return SessionRecord.from_document(doc)

    def _end(
        self,
        record: SessionRecord,
        reason: str,
        now: datetime,
        deadline: Optional[Deadline],
    ) -> bool:
        with store_guard("end_session", USER_SESSIONS, record.id):
            return self.store.update_if(
                USER_SESSIONS,
                record.id,
                {"active": False, "ended_at": now, "end_reason": reason},
                expected={"active": True},
                deadline=deadline,
            )

    def _claims_for(self, uid: str, deadline: Optional[Deadline]) -> Claims:
        claims = self.directory.get_claims(uid, deadline=deadline)
        return claims or Claims(role=self.settings.default_role)

    async def create_session(
        self,
        uid: str,
        email: str,
        meta: Optional[Dict[str, Any]] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> SessionRecord:
        expires_at = self._now() + self.session_ttl
        data = {
            "uid": uid,
            "email": email,
            "active": True,
            "expires_at": expires_at,
            "meta": dict(meta or {}),
        }
        with store_guard("create_session", USER_SESSIONS):
            session_id = self.store.create(USER_SESSIONS, data, deadline=deadline)
            record = SessionRecord.from_document(
                self.store.get(USER_SESSIONS, session_id, deadline=deadline)
            )
        self.logger.info("session_created", uid=uid, session_id=record.id)
        return record

    async def validate_session(
        self, session_id: str, *, deadline: Optional[Deadline] = None
    ) -> SessionInfo:
        record = self._load(session_id, deadline)
        now = self._now()
        if record.is_usable(now):
            return SessionInfo(
                uid=record.uid,
                email=record.email,
                active=True,
                claims=self._claims_for(record.uid, deadline),
                expires_at=record.expires_at,
                session_id=record.id,
            )
        if record.is_expired(now):
            if record.active:
                try:
                    self._end(record, "expired", now, deadline)
                except InfrastructureError as exc:
                    self.logger.warning(
                        "session_expiry_mark_failed", session_id=record.id, error=str(exc)
                    )
            self.logger.info("session_expired", session_id=record.id)
            raise SessionExpiredError("session expired", detail={"session_id": record.id})
        self.logger.info("session_inactive", session_id=record.id, end_reason=record.end_reason)
        raise SessionInactiveError("session is not active", detail={"session_id": record.id})

    async def refresh_session(
        self, session_id: str, *, deadline: Optional[Deadline] = None
    ) -> SessionInfo:
        """Extend a usable session; the expiry never moves backwards.

        The write is conditional on the expiry that was read, so a refresh
        racing another one re-reads and keeps whichever expiry is later.
        """
        info = await self.validate_session(session_id, deadline=deadline)
        current = info.expires_at
        for _ in range(REFRESH_ATTEMPTS):
            target = max(current, self._now() + self.session_ttl)
            if target == current:
                break
            with store_guard("refresh_session", USER_SESSIONS, session_id):
                applied = self.store.update_if(
                    USER_SESSIONS,
                    session_id,
                    {"expires_at": target},
                    expected={"expires_at": current, "active": True},
                    deadline=deadline,
                )
            if applied:
                current = target
                break
            # Lost a race: revalidate so logout or expiry in between still wins
            current = (await self.validate_session(session_id, deadline=deadline)).expires_at
        self.logger.info("session_refreshed", session_id=session_id)
        return replace(info, expires_at=current)

    async def logout(self, session_id: str, *, deadline: Optional[Deadline] = None) -> None:
        record = self._load(session_id, deadline)
        if record.active:
            self._end(record, "logout", self._now(), deadline)
        self.logger.info("session_logged_out", session_id=record.id)

    async def revoke_all_for_user(
        self, uid: str, *, deadline: Optional[Deadline] = None
    ) -> int:
        """End every active session of ``uid`` in one batch; returns how many."""
        active = self.list_sessions(uid, active_only=True, deadline=deadline)
        if not active:
            return 0
        now = self._now()
        ops = [
            BatchOperation.update(
                USER_SESSIONS,
                record.id,
                {"active": False, "ended_at": now, "end_reason": "revoked"},
            )
            for record in active
        ]
        with store_guard("revoke_sessions", USER_SESSIONS):
            self.store.commit_batch(ops, deadline=deadline)
        self.logger.info("sessions_revoked", uid=uid, count=len(ops))
        return len(ops)

    def list_sessions(
        self,
        uid: str,
        *,
        active_only: bool = True,
        deadline: Optional[Deadline] = None,
    ) -> List[SessionRecord]:
        filters = [QueryFilter("uid", "==", uid)]
        if active_only:
            filters.append(QueryFilter("active", "==", True))
        options = QueryOptions(filters=filters, order_by="created_at", order_dir="desc")
        with store_guard("list_sessions", USER_SESSIONS):
            docs = self.store.query(USER_SESSIONS, options, deadline=deadline)
            return [SessionRecord.from_document(doc) for doc in docs]


__all__ = ["SessionInfo", "SessionManager"]
