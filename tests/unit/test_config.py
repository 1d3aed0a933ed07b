"""Unit tests for configuration loading."""

import pytest

from offertory.config import Settings, get_settings, reset_settings

pytestmark = pytest.mark.unit


class TestSettings:
    """Tests for Settings defaults and environment overrides."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("VERIFICATION_OVERDUE_DAYS", raising=False)
        settings = Settings(_env_file=None)

        assert settings.default_currency == "NGN"
        assert settings.verification_overdue_days == 7
        assert settings.gateway_signature_header == "monnify-signature"
        assert settings.gateway_timeout_seconds == 10.0

    def test_environment_override(self, monkeypatch):
        """Test environment variables override defaults, case-insensitively."""
        monkeypatch.setenv("VERIFICATION_OVERDUE_DAYS", "14")
        monkeypatch.setenv("default_currency", "USD")

        settings = Settings(_env_file=None)

        assert settings.verification_overdue_days == 14
        assert settings.default_currency == "USD"

    def test_invalid_timeout_refused(self):
        with pytest.raises(ValueError):
            Settings(_env_file=None, gateway_timeout_seconds=0)


class TestGetSettings:
    """Tests for the cached settings accessor."""

    def test_cached_instance(self):
        assert get_settings() is get_settings()

    def test_reset_rereads_environment(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        reset_settings()

        second = get_settings()

        assert second is not first
        assert second.log_level == "DEBUG"

    def test_test_secret_loaded(self):
        """Test the suite's gateway secret is visible to the engine."""
        assert get_settings().gateway_secret_key == "test-secret-key"
