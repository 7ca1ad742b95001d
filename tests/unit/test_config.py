"""Unit tests for settings loading."""

import pytest
from pydantic import ValidationError

from paysync.config import PaddleConfig, PayTabsConfig, Settings


class TestSettings:
    def test_nested_groups_read_from_env(self):
        settings = Settings()

        assert settings.paymob.hmac_secret == "paymob-hmac-secret"
        assert settings.paytabs.profile_id == "12345"
        assert settings.sweeper.enabled is False

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("SWEEPER__ENABLED")
        settings = Settings()

        assert settings.storage_backend == "memory"
        assert settings.sweeper.interval_seconds == 3600
        assert settings.remote_call_timeout_seconds == 10.0
        assert settings.paymob.currency == "EGP"

    def test_interval_override(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SWEEPER__INTERVAL_SECONDS", "900")
        assert Settings().sweeper.interval_seconds == 900

    def test_invalid_backend(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("STORAGE_BACKEND", "redis")
        with pytest.raises(ValidationError):
            Settings()

    def test_settings_are_frozen(self):
        settings = Settings()
        with pytest.raises(ValidationError):
            settings.debug = True


class TestGatewayConfigs:
    def test_paytabs_needs_profile_and_key(self):
        assert PayTabsConfig(profile_id="1", server_key="k").configured is True
        assert PayTabsConfig(server_key="k").configured is False

    def test_paddle_environment_selects_base_url(self):
        assert PaddleConfig(environment="production").api_base_url == "https://api.paddle.com"
        assert PaddleConfig().api_base_url == "https://sandbox-api.paddle.com"
