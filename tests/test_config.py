"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from gatekeep.config import Settings, get_settings


class TestValidators:
    def test_defaults(self, settings):
        assert settings.otp_length == 6
        assert settings.otp_ttl_minutes == 10
        assert settings.session_ttl_hours == 24
        assert settings.default_role == "user"
        assert settings.otp_retention_days is None

    @pytest.mark.parametrize("length", [3, 11])
    def test_otp_length_bounds(self, length):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 40, otp_length=length)

    def test_lifetimes_must_be_positive(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 40, session_ttl_hours=0)

    def test_retention_at_least_one_day(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 40, otp_retention_days=0)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("OTP_LENGTH", "8")
        monkeypatch.setenv("SESSION_TTL_HOURS", "12")
        monkeypatch.setenv("SESSION_RETENTION_DAYS", "30")
        monkeypatch.setenv("DEFAULT_ROLE", "member")

        settings = Settings.from_env()

        assert settings.otp_length == 8
        assert settings.session_ttl_hours == 12
        assert settings.session_retention_days == 30
        assert settings.default_role == "member"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestJwtSecret:
    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_explicit_secret_kept(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        assert Settings(jwt_secret="configured-secret").jwt_secret == "configured-secret"
        assert not (tmp_path / ".jwt_secret").exists()
