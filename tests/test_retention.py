"""Tests for the retention reaper."""

from datetime import datetime, timedelta, timezone

from gatekeep.service.retention import RetentionReaper
from gatekeep.storage.models import USER_OTPS, USER_SESSIONS

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _seed(store):
    old = NOW - timedelta(days=40)
    recent = NOW - timedelta(days=2)
    store.create_with_id(USER_OTPS, "old-otp", {"used": True, "expires_at": old})
    store.create_with_id(USER_OTPS, "old-unused-otp", {"used": False, "expires_at": old})
    store.create_with_id(USER_OTPS, "recent-otp", {"used": True, "expires_at": recent})
    store.create_with_id(USER_SESSIONS, "old-ended", {"active": False, "expires_at": old})
    store.create_with_id(USER_SESSIONS, "old-active", {"active": True, "expires_at": old})
    store.create_with_id(USER_SESSIONS, "recent-ended", {"active": False, "expires_at": recent})


class TestRetentionReaper:
    def test_nothing_purged_without_retention(self, store, settings):
        _seed(store)

        report = RetentionReaper(store, settings).purge(NOW)

        assert report.otps_deleted == 0
        assert report.sessions_deleted == 0
        assert store.count(USER_OTPS) == 3

    def test_purges_records_past_retention(self, store, settings):
        _seed(store)
        configured = settings.model_copy(
            update={"otp_retention_days": 30, "session_retention_days": 30}
        )

        report = RetentionReaper(store, configured).purge(NOW)

        assert report.otps_deleted == 2
        assert report.sessions_deleted == 1
        assert [d.id for d in store.list_documents(USER_OTPS)] == ["recent-otp"]
        assert sorted(d.id for d in store.list_documents(USER_SESSIONS)) == [
            "old-active",
            "recent-ended",
        ]

    def test_batches_until_exhausted(self, store, settings):
        expired = NOW - timedelta(days=10)
        for i in range(7):
            store.create_with_id(USER_OTPS, f"otp{i}", {"used": True, "expires_at": expired})
        configured = settings.model_copy(update={"otp_retention_days": 1})

        report = RetentionReaper(store, configured, batch_size=3).purge(NOW)

        assert report.otps_deleted == 7
        assert store.count(USER_OTPS) == 0
