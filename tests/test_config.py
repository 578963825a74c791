"""Tests for environment-driven settings."""

import importlib

import pytest

from backend import config
from scaling.exceptions import ConfigurationError


class TestSettings:
    def test_admin_settings_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("PID_FILE", "/tmp/hive-test.pid")
        monkeypatch.setenv("API_URL", "http://hive:9000")
        try:
            reloaded = importlib.reload(config)
            assert reloaded.PID_FILE == "/tmp/hive-test.pid"
            assert reloaded.API_URL == "http://hive:9000"
            assert reloaded.API_HOST == "0.0.0.0"
        finally:
            monkeypatch.undo()
            importlib.reload(config)

    def test_settings_precede_validation(self):
        # Every setting is defined at import time, before anything validates them
        names = list(vars(config))
        validate_at = names.index("validate_configuration")
        for setting in ("PID_FILE", "API_HOST", "API_URL", "LOG_FILE", "HISTORY_FILE"):
            assert names.index(setting) < validate_at


class TestValidateConfiguration:
    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError, match="PROVISIONING_API_KEY"):
            config.validate_configuration(api_key="")

    def test_explicit_api_key_accepted(self):
        config.validate_configuration(api_key="test-key")
