from datetime import timedelta

import pytest
from pydantic import ValidationError

from accountcore.config import (
    PLACEHOLDER_SECRET,
    Environment,
    Settings,
    get_settings,
    reset_settings_cache,
)
from conftest import TEST_SECRET


class TestSecretValidation:
    def test_secret_required(self):
        with pytest.raises(ValidationError):
            Settings(access_token_secret=None)

    def test_placeholder_rejected_in_production(self):
        with pytest.raises(ValidationError, match="placeholder"):
            Settings(access_token_secret=PLACEHOLDER_SECRET, environment="production")

    def test_short_secret_rejected_in_production(self):
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(access_token_secret="short-secret", environment="production")

    def test_short_secret_allowed_in_development(self):
        settings = Settings(access_token_secret="short-secret", environment="development")
        assert settings.environment is Environment.DEVELOPMENT

    def test_strong_secret_accepted_in_production(self):
        settings = Settings(access_token_secret=TEST_SECRET, environment=" Production ")
        assert settings.environment is Environment.PRODUCTION


class TestFields:
    def test_defaults(self):
        settings = Settings(access_token_secret=TEST_SECRET)
        assert settings.access_token_ttl == timedelta(days=7)
        assert settings.refresh_ttl == timedelta(days=30)
        assert settings.verification_ttl == timedelta(hours=24)
        assert settings.reset_ttl == timedelta(hours=1)
        assert settings.password_hash_cost == 3
        assert settings.reclaim_unverified_email is True
        assert settings.revoke_sessions_on_password_reset is True
        assert settings.transition_retries == 3

    @pytest.mark.parametrize(
        "field", ["reset_ttl_minutes", "refresh_token_ttl_days", "transition_retries"]
    )
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(access_token_secret=TEST_SECRET, **{field: 0})

    def test_password_bounds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            Settings(
                access_token_secret=TEST_SECRET,
                password_min_length=20,
                password_max_length=10,
            )


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("RESET_TTL_MINUTES", "15")
        monkeypatch.setenv("RECLAIM_UNVERIFIED_EMAIL", "false")
        monkeypatch.setenv("ADMIN_API_KEY", "from-env")

        settings = Settings.from_env()
        assert settings.reset_ttl == timedelta(minutes=15)
        assert settings.reclaim_unverified_email is False
        assert settings.admin_api_key == "from-env"

    def test_reads_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("VERIFICATION_TTL_HOURS", raising=False)
        (tmp_path / ".env").write_text("VERIFICATION_TTL_HOURS=48\n")

        assert Settings.from_env().verification_ttl == timedelta(hours=48)

    def test_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("TRANSITION_RETRIES", "5")
        assert get_settings().transition_retries == first.transition_retries
        reset_settings_cache()
        assert get_settings().transition_retries == 5
        reset_settings_cache()
