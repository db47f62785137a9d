import pytest
from pydantic import ValidationError

from authkernel.config import Settings, get_settings, reset_settings_cache

ACCESS = "a" * 40
REFRESH = "r" * 40


class TestSettings:
    """Settings loading and validation."""

    def test_defaults(self):
        settings = Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH)

        assert settings.max_login_attempts == 5
        assert settings.lockout_window_seconds == 900
        assert settings.access_token_ttl_minutes < settings.refresh_token_ttl_minutes
        assert settings.self_register_role_set == {"student", "instructor"}

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short", jwt_refresh_secret=REFRESH)

    def test_access_ttl_must_be_shorter_than_refresh(self):
        with pytest.raises(ValidationError):
            Settings(
                jwt_secret=ACCESS,
                jwt_refresh_secret=REFRESH,
                access_token_ttl_minutes=120,
                refresh_token_ttl_minutes=60,
            )

    @pytest.mark.parametrize(
        "field", ["max_login_attempts", "lockout_window_seconds", "identity_cache_ttl_seconds"]
    )
    def test_non_positive_limits_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=ACCESS, jwt_refresh_secret=REFRESH, **{field: 0})

    def test_missing_secrets_are_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings()
        second = Settings()

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret != first.jwt_refresh_secret
        assert second.jwt_secret == first.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
        assert (tmp_path / ".jwt_refresh_secret").exists()

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
        monkeypatch.setenv("SELF_REGISTER_ROLES", "student")
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_settings_cache()
        try:
            settings = get_settings()
            assert settings.max_login_attempts == 7
            assert settings.self_register_role_set == {"student"}
            assert settings.allow_signup is False
            assert get_settings() is settings
        finally:
            reset_settings_cache()
