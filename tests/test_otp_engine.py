"""Unit tests for one-time passcode issuance and consumption."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from gatekeep.service.errors import (
    OtpExpiredError,
    OtpInvalidError,
    UserNotFoundError,
)
from gatekeep.service.otp import INVALID_OTP_MESSAGE, OtpEngine
from gatekeep.storage.models import USER_OTPS, CreateIdentityRequest


@pytest.fixture
def user(directory):
    return directory.create_identity(CreateIdentityRequest(email="user@x.com"))


class FailingNotifier:
    def send_otp(self, email, code, expires_at):
        raise ConnectionError("smtp down")


class TestGenerateCode:
    """Tests for code generation."""

    def test_codes_are_decimal_of_configured_length(self, otp_engine):
        for _ in range(50):
            code = otp_engine.generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_explicit_length(self, otp_engine):
        assert len(otp_engine.generate_code(8)) == 8


class TestRequestOtp:
    """Tests for request_otp."""

    async def test_creates_unused_record_and_notifies(self, otp_engine, user, store, notifier):
        record = await otp_engine.request_otp("User@X.com")

        assert record.uid == user.id
        assert record.email == "user@x.com"
        assert record.used is False
        lifetime = record.expires_at - record.created_at
        assert timedelta(minutes=9) < lifetime <= timedelta(minutes=10)
        assert store.get(USER_OTPS, record.id).data["otp"] == record.otp
        assert notifier.last_code_for("user@x.com") == record.otp

    async def test_leading_zeros_preserved(self, otp_engine, user, store, monkeypatch):
        monkeypatch.setattr(otp_engine, "generate_code", lambda length=None: "000123")

        record = await otp_engine.request_otp("user@x.com")

        assert record.otp == "000123"
        assert store.get(USER_OTPS, record.id).data["otp"] == "000123"

    async def test_unknown_user(self, otp_engine):
        with pytest.raises(UserNotFoundError):
            await otp_engine.request_otp("ghost@x.com")

    async def test_disabled_user_looks_unknown(self, otp_engine, user, directory, store):
        directory.disable(user.id)
        with pytest.raises(UserNotFoundError):
            await otp_engine.request_otp("user@x.com")
        assert store.count(USER_OTPS) == 0

    async def test_delivery_failure_does_not_fail_request(self, store, directory, settings, user):
        engine = OtpEngine(store, directory, settings, notifier=FailingNotifier())

        record = await engine.request_otp("user@x.com")

        assert store.exists(USER_OTPS, record.id)


class TestValidateAndConsume:
    """Tests for validate_and_consume."""

    async def test_consumes_once(self, otp_engine, user, store):
        record = await otp_engine.request_otp("user@x.com")

        uid = await otp_engine.validate_and_consume("user@x.com", record.otp)

        assert uid == user.id
        stored = store.get(USER_OTPS, record.id).data
        assert stored["used"] is True
        assert stored["used_at"] is not None

        with pytest.raises(OtpInvalidError) as exc_info:
            await otp_engine.validate_and_consume("user@x.com", record.otp)
        assert exc_info.value.message == INVALID_OTP_MESSAGE

    async def test_wrong_code_and_unknown_email(self, otp_engine, user):
        record = await otp_engine.request_otp("user@x.com")
        wrong = "1" * 6 if record.otp != "1" * 6 else "2" * 6

        with pytest.raises(OtpInvalidError):
            await otp_engine.validate_and_consume("user@x.com", wrong)
        with pytest.raises(OtpInvalidError):
            await otp_engine.validate_and_consume("other@x.com", record.otp)
        with pytest.raises(OtpInvalidError):
            await otp_engine.validate_and_consume("user@x.com", "")

    async def test_expired_code_rejected_and_left_unused(self, otp_engine, user, store, monkeypatch):
        record = await otp_engine.request_otp("user@x.com")
        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        monkeypatch.setattr(otp_engine, "_now", lambda: later)

        with pytest.raises(OtpExpiredError):
            await otp_engine.validate_and_consume("user@x.com", record.otp)

        assert store.get(USER_OTPS, record.id).data["used"] is False

    async def test_newest_matching_record_consumed_first(self, otp_engine, user, store, monkeypatch):
        monkeypatch.setattr(otp_engine, "generate_code", lambda length=None: "555555")
        older = await otp_engine.request_otp("user@x.com")
        newer = await otp_engine.request_otp("user@x.com")
        store.update(
            USER_OTPS,
            older.id,
            {"created_at": datetime.now(timezone.utc) - timedelta(minutes=1)},
        )

        await otp_engine.validate_and_consume("user@x.com", "555555")

        assert store.get(USER_OTPS, newer.id).data["used"] is True
        assert store.get(USER_OTPS, older.id).data["used"] is False

    async def test_concurrent_coroutines_single_winner(self, otp_engine, user):
        record = await otp_engine.request_otp("user@x.com")

        results = await asyncio.gather(
            *[otp_engine.validate_and_consume("user@x.com", record.otp) for _ in range(5)],
            return_exceptions=True,
        )

        assert results.count(user.id) == 1
        assert all(isinstance(r, OtpInvalidError) for r in results if r != user.id)

    def test_concurrent_threads_single_winner(self, otp_engine, user):
        record = asyncio.run(otp_engine.request_otp("user@x.com"))
        outcomes = []
        barrier = threading.Barrier(6)

        def consume():
            barrier.wait()
            try:
                outcomes.append(
                    asyncio.run(otp_engine.validate_and_consume("user@x.com", record.otp))
                )
            except OtpInvalidError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=consume) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(user.id) == 1
        assert outcomes.count("rejected") == 5
