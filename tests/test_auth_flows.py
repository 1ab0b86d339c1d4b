"""End-to-end login flows against the in-memory store."""

import pytest

from gatekeep.deadline import DeadlineExceeded
from gatekeep.service.auth import (
    INVALID_CREDENTIALS_MESSAGE,
    LOGIN_SUCCESS_MESSAGE,
    OTP_SENT_MESSAGE,
    USER_NOT_FOUND_MESSAGE,
)
from gatekeep.service.errors import (
    InfrastructureError,
    SessionInactiveError,
    ValidationError,
)
from gatekeep.service.otp import INVALID_OTP_MESSAGE
from gatekeep.storage.models import (
    USER_ACTIVITY,
    USER_CREDENTIALS,
    USER_SESSIONS,
    Claims,
)


class TestOtpLogin:
    """Tests for the OTP login flow."""

    async def test_request_and_login_with_code(self, auth_service, otp_engine, store, monkeypatch):
        user = await auth_service.register_user("user@x.com")
        monkeypatch.setattr(otp_engine, "generate_code", lambda length=None: "042817")

        requested = await auth_service.request_otp("user@x.com")
        assert requested.success is True
        assert requested.message == OTP_SENT_MESSAGE
        assert requested.expires_at is not None

        result = await auth_service.login_with_otp("user@x.com", "042817")

        assert result.success is True
        assert result.message == LOGIN_SUCCESS_MESSAGE
        assert result.user.id == user.id
        assert result.token
        assert result.claims.role == "user"
        session = store.get(USER_SESSIONS, result.session_id).data
        assert session["active"] is True
        assert session["meta"]["login_method"] == "otp"
        assert store.exists(USER_ACTIVITY, user.id)

        info = await auth_service.validate_session(result.session_id)
        assert info.uid == user.id

    async def test_code_cannot_be_replayed(self, auth_service, otp_engine, monkeypatch):
        await auth_service.register_user("user@x.com")
        monkeypatch.setattr(otp_engine, "generate_code", lambda length=None: "042817")
        await auth_service.request_otp("user@x.com")

        first = await auth_service.login_with_otp("user@x.com", "042817")
        second = await auth_service.login_with_otp("user@x.com", "042817")

        assert first.success is True
        assert second.success is False
        assert second.reason == "otp_invalid"
        assert second.message == INVALID_OTP_MESSAGE
        assert second.session_id is None

    async def test_request_for_unknown_user(self, auth_service):
        result = await auth_service.request_otp("ghost@x.com")
        assert result.success is False
        assert result.message == USER_NOT_FOUND_MESSAGE

    async def test_disabled_after_code_issued(self, auth_service, otp_engine, monkeypatch):
        user = await auth_service.register_user("user@x.com")
        monkeypatch.setattr(otp_engine, "generate_code", lambda length=None: "123456")
        await auth_service.request_otp("user@x.com")
        await auth_service.disable_user(user.id)

        result = await auth_service.login_with_otp("user@x.com", "123456")

        assert result.success is False
        assert result.reason == "invalid_credentials"

    async def test_token_carries_stored_claims(self, auth_service, directory, otp_engine, monkeypatch):
        await auth_service.register_user(
            "admin@x.com", claims=Claims(role="admin", permissions=["users:write"])
        )
        monkeypatch.setattr(otp_engine, "generate_code", lambda length=None: "777777")
        await auth_service.request_otp("admin@x.com")

        result = await auth_service.login_with_otp("admin@x.com", "777777")

        payload = directory.verify_token(result.token)
        assert payload["role"] == "admin"
        assert payload["permissions"] == ["users:write"]
        assert payload["sub"] == result.user.id


class TestPasswordLogin:
    """Tests for the password login flow."""

    async def test_login_with_password(self, auth_service, store):
        user = await auth_service.register_user("user@x.com", password="correct horse")

        result = await auth_service.login("USER@x.com", "correct horse")

        assert result.success is True
        assert result.user.id == user.id
        assert store.get(USER_SESSIONS, result.session_id).data["meta"]["login_method"] == "password"

    async def test_wrong_password_and_unknown_user_look_alike(self, auth_service):
        await auth_service.register_user("user@x.com", password="correct horse")

        wrong = await auth_service.login("user@x.com", "battery staple")
        unknown = await auth_service.login("ghost@x.com", "battery staple")

        for result in (wrong, unknown):
            assert result.success is False
            assert result.message == INVALID_CREDENTIALS_MESSAGE
            assert result.reason == "invalid_credentials"

    async def test_user_without_password(self, auth_service):
        await auth_service.register_user("user@x.com")
        result = await auth_service.login("user@x.com", "anything-at-all")
        assert result.reason == "invalid_credentials"

    async def test_disabled_user_cannot_login(self, auth_service):
        user = await auth_service.register_user("user@x.com", password="correct horse")
        await auth_service.disable_user(user.id)

        result = await auth_service.login("user@x.com", "correct horse")
        assert result.success is False

        await auth_service.enable_user(user.id)
        assert (await auth_service.login("user@x.com", "correct horse")).success is True

    async def test_set_password(self, auth_service):
        user = await auth_service.register_user("user@x.com", password="first-password")
        await auth_service.set_password(user.id, "second-password")

        assert (await auth_service.login("user@x.com", "first-password")).success is False
        assert (await auth_service.login("user@x.com", "second-password")).success is True

    async def test_last_login_failure_does_not_fail_login(self, auth_service, directory, monkeypatch):
        await auth_service.register_user("user@x.com", password="correct horse")

        def broken_record_login(uid, at, **kwargs):
            raise InfrastructureError("record_login failed", detail={"operation": "record_login"})

        monkeypatch.setattr(directory, "record_login", broken_record_login)

        result = await auth_service.login("user@x.com", "correct horse")

        assert result.success is True
        assert result.session_id

    async def test_last_login_deadline_does_not_fail_login(
        self, auth_service, directory, session_manager, monkeypatch
    ):
        user = await auth_service.register_user("user@x.com", password="correct horse")

        def late_record_login(uid, at, **kwargs):
            raise DeadlineExceeded("record_login")

        monkeypatch.setattr(directory, "record_login", late_record_login)

        result = await auth_service.login("user@x.com", "correct horse")

        assert result.success is True
        sessions = session_manager.list_sessions(user.id)
        assert [s.id for s in sessions] == [result.session_id]
        assert (await auth_service.validate_session(result.session_id)).uid == user.id


class TestRegistrationAndManagement:
    """Tests for user management operations."""

    async def test_short_password_rejected_before_identity_created(self, auth_service, directory):
        with pytest.raises(ValidationError):
            await auth_service.register_user("user@x.com", password="short")
        assert directory.identity_exists_by_email("user@x.com") is False

    async def test_register_stores_argon2_hash(self, auth_service, store):
        user = await auth_service.register_user("user@x.com", password="correct horse")

        credential = store.get(USER_CREDENTIALS, user.id).data
        assert credential["password_algo"] == "argon2id"
        assert credential["password_hash"].startswith("$argon2id$")
        assert "correct horse" not in credential["password_hash"]

    async def test_disable_user_revokes_sessions(self, auth_service):
        user = await auth_service.register_user("user@x.com", password="correct horse")
        first = await auth_service.login("user@x.com", "correct horse")
        second = await auth_service.login("user@x.com", "correct horse")

        ended = await auth_service.disable_user(user.id)

        assert ended == 2
        for result in (first, second):
            with pytest.raises(SessionInactiveError):
                await auth_service.validate_session(result.session_id)

    async def test_logout_then_refresh_fails(self, auth_service):
        await auth_service.register_user("user@x.com", password="correct horse")
        result = await auth_service.login("user@x.com", "correct horse")

        refreshed = await auth_service.refresh_session(result.session_id)
        assert refreshed.expires_at >= result.expires_at

        await auth_service.logout(result.session_id)
        with pytest.raises(SessionInactiveError):
            await auth_service.refresh_session(result.session_id)
