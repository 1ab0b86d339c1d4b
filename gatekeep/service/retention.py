from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from gatekeep.config import Settings
from gatekeep.deadline import Deadline
from gatekeep.logging import get_logger
from gatekeep.service.errors import store_guard
from gatekeep.storage.common import DocumentStore
from gatekeep.storage.models import (
    USER_OTPS,
    USER_SESSIONS,
    BatchOperation,
    QueryFilter,
    QueryOptions,
)

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 200


@dataclass
class PurgeReport:
    otps_deleted: int = 0
    sessions_deleted: int = 0


class RetentionReaper:
    """Physically delete OTP and session records past their retention window.

    Nothing is purged unless a retention period is configured; the engines
    themselves never delete records.
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.store = store
        self.settings = settings
        self.batch_size = max(1, batch_size)
        self.logger = logger

    def purge(
        self, now: Optional[datetime] = None, *, deadline: Optional[Deadline] = None
    ) -> PurgeReport:
        now = now or datetime.now(timezone.utc)
        report = PurgeReport()
        if self.settings.otp_retention_days:
            cutoff = now - timedelta(days=self.settings.otp_retention_days)
            report.otps_deleted = self._purge(
                USER_OTPS, [QueryFilter("expires_at", "<", cutoff)], deadline
            )
        if self.settings.session_retention_days:
            cutoff = now - timedelta(days=self.settings.session_retention_days)
            report.sessions_deleted = self._purge(
                USER_SESSIONS,
                [
                    QueryFilter("expires_at", "<", cutoff),
                    QueryFilter("active", "==", False),
                ],
                deadline,
            )
        self.logger.info(
            "retention_purge_completed",
            otps_deleted=report.otps_deleted,
            sessions_deleted=report.sessions_deleted,
        )
        return report

    def _purge(
        self,
        collection: str,
        filters: List[QueryFilter],
        deadline: Optional[Deadline],
    ) -> int:
        deleted = 0
        options = QueryOptions(filters=filters, limit=self.batch_size)
        while True:
            with store_guard("retention_purge", collection):
                docs = self.store.query(collection, options, deadline=deadline)
                if not docs:
                    return deleted
                ops = [BatchOperation.delete(collection, doc.id) for doc in docs]
                self.store.commit_batch(ops, deadline=deadline)
            deleted += len(ops)
            if len(docs) < self.batch_size:
                return deleted


__all__ = ["PurgeReport", "RetentionReaper"]
