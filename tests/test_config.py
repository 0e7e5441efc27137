"""Settings loading and validation."""

import pytest
from pydantic import ValidationError

from tessera.config import (
    DEFAULT_APP_ID,
    ReplayPolicy,
    Settings,
    get_settings,
    reset_settings_cache,
)

SECRET = "x" * 32


class TestSettingsDefaults:
    def test_token_lifetimes(self):
        settings = Settings(jwt_secret=SECRET)
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_hours == 720
        assert settings.pending_auth_ttl_minutes == 5
        assert settings.pending_two_factor_ttl_minutes == 10

    def test_two_factor_defaults(self):
        settings = Settings(jwt_secret=SECRET)
        assert settings.recovery_code_count == 10
        assert settings.totp_drift_steps == 1
        assert settings.totp_single_use is True
        assert settings.mfa_max_attempts == 5

    def test_default_tenant_and_policy(self):
        settings = Settings(jwt_secret=SECRET)
        assert settings.default_app_id == DEFAULT_APP_ID
        assert settings.refresh_replay_policy is ReplayPolicy.REVOKE_FAMILY


class TestSettingsValidation:
    def test_missing_secret_rejected(self):
        """A missing signing secret must stop startup."""
        with pytest.raises(ValidationError):
            Settings()

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 31)

    def test_replay_policy_coerced_from_string(self):
        settings = Settings(jwt_secret=SECRET, refresh_replay_policy="reject")
        assert settings.refresh_replay_policy is ReplayPolicy.REJECT

    def test_unknown_replay_policy_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, refresh_replay_policy="ignore")

    def test_default_app_id_must_be_uuid(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, default_app_id="not-a-uuid")

    def test_negative_drift_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=SECRET, totp_drift_steps=-1)


class TestSettingsFromEnv:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "y" * 40)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REFRESH_REPLAY_POLICY", "reject")
        monkeypatch.setenv("OAUTH_GITHUB_CLIENT_ID", "gh-id")
        monkeypatch.setenv("OAUTH_GITHUB_CLIENT_SECRET", "gh-secret")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 5
        assert settings.refresh_replay_policy is ReplayPolicy.REJECT
        assert settings.oauth_credentials("github") == ("gh-id", "gh-secret")
        assert settings.oauth_credentials("myspace") == (None, None)

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        monkeypatch.setenv("JWT_ISSUER", "first-issuer")
        first = get_settings()
        monkeypatch.setenv("JWT_ISSUER", "second-issuer")
        assert get_settings() is first
        reset_settings_cache()
        try:
            assert get_settings().jwt_issuer == "second-issuer"
        finally:
            reset_settings_cache()
