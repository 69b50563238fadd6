"""Tests for environment configuration."""

import pytest

import config
from config import ConfigurationError, SyncConfig


class TestSyncConfig:

    def test_defaults_without_environment(self, monkeypatch):
        for key in ("REVERT_WINDOW_SECONDS", "STOCK_MAX_RETRIES", "POLL_INTERVAL_SECONDS"):
            monkeypatch.delenv(key, raising=False)

        sync = SyncConfig.from_env()

        assert sync.revert_window_seconds == 25.0
        assert sync.stock_max_retries == 3
        assert sync.stock_attempt_timeout_seconds == 8.0
        assert sync.remote_call_timeout_seconds == 10.0
        assert sync.activity_display_limit == 20

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("REVERT_WINDOW_SECONDS", "10")
        monkeypatch.setenv("STOCK_MAX_RETRIES", "5")
        monkeypatch.setenv("APP_USER_ID", "app-user")

        sync = SyncConfig.from_env()

        assert sync.revert_window_seconds == 10.0
        assert sync.stock_max_retries == 5
        assert sync.app_user_id == "app-user"

    def test_non_numeric_rejected(self, monkeypatch):
        monkeypatch.setenv("STOCK_MAX_RETRIES", "lots")
        with pytest.raises(ConfigurationError):
            SyncConfig.from_env()

    def test_range_validation(self):
        with pytest.raises(ConfigurationError):
            SyncConfig(revert_window_seconds=0).validate()
        with pytest.raises(ConfigurationError):
            SyncConfig(activity_display_limit=50, activity_retention=10).validate()


class TestConfig:

    def test_requires_supabase(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.setenv("SUPABASE_KEY", "key")

        with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
            config.Config()

    def test_https_enforced(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "http://insecure.example")
        monkeypatch.setenv("SUPABASE_KEY", "key")

        with pytest.raises(ConfigurationError, match="https"):
            config.Config()

    def test_safe_summary_hides_key(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
        monkeypatch.setenv("SUPABASE_KEY", "very-secret")

        summary = config.Config().get_safe_summary()

        assert summary["supabase_url"] == "https://project.supabase.co"
        assert "very-secret" not in str(summary)
