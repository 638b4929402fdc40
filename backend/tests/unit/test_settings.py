"""
Unit tests for LifecycleSettings.
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from backend.src.config.settings import LifecycleSettings


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "LIFECYCLE_SWEEP_INTERVAL_SECONDS",
        "LIFECYCLE_NO_SHOW_GRACE_MINUTES",
        "LIFECYCLE_RECONCILE_SAMPLE_SIZE",
        "ESCROW_SERVICE_URL",
        "ESCROW_SERVICE_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:

    def test_cadences(self, clean_env):
        settings = LifecycleSettings(_env_file=None)
        assert settings.sweep_interval_seconds == 300
        assert settings.no_show_sweep_interval_seconds == 900
        assert settings.reconcile_interval_seconds == 1800
        assert settings.escrow_settlement_interval_seconds == 3600

    def test_windows(self, clean_env):
        settings = LifecycleSettings(_env_file=None)
        assert settings.no_show_grace == timedelta(hours=1)
        assert settings.scheduled_no_show_delay == timedelta(minutes=30)
        assert settings.reconcile_sample_size == 20
        assert settings.job_max_attempts == 3

    def test_escrow_defaults_to_no_signer(self, clean_env):
        settings = LifecycleSettings(_env_file=None)
        assert not settings.escrow_configured
        assert settings.escrow_token is None


class TestEnvironment:

    def test_overrides(self, clean_env):
        clean_env.setenv("LIFECYCLE_SWEEP_INTERVAL_SECONDS", "60")
        clean_env.setenv("LIFECYCLE_NO_SHOW_GRACE_MINUTES", "90")
        clean_env.setenv("ESCROW_SERVICE_URL", "https://escrow.example.com/")
        clean_env.setenv("ESCROW_SERVICE_TOKEN", "secret")

        settings = LifecycleSettings(_env_file=None)

        assert settings.sweep_interval_seconds == 60
        assert settings.no_show_grace == timedelta(minutes=90)
        assert settings.escrow_service_url == "https://escrow.example.com"
        assert settings.escrow_configured
        assert settings.escrow_token == "secret"

    def test_rejects_escrow_url_without_scheme(self, clean_env):
        clean_env.setenv("ESCROW_SERVICE_URL", "escrow.example.com")
        with pytest.raises(ValidationError):
            LifecycleSettings(_env_file=None)

    def test_rejects_zero_sample(self, clean_env):
        clean_env.setenv("LIFECYCLE_RECONCILE_SAMPLE_SIZE", "0")
        with pytest.raises(ValidationError):
            LifecycleSettings(_env_file=None)
