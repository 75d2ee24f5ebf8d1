"""Settings read from the environment."""

import logging

import pytest

from debug_settings import DebugSettings

NUMERIC = ("RULE_DEBUG_TIMEOUT", "RULE_DEBUG_MAX_REDIRECTS", "RULE_DEBUG_SCRIPT_TIMEOUT", "RULE_DEBUG_ITEM_LIMIT")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in NUMERIC + ("RULE_DEBUG_WEBVIEW", "PROXY_URL", "RULE_DEBUG_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:

    def test_defaults(self):
        assert DebugSettings.from_env() == DebugSettings()

    def test_values_are_parsed(self, monkeypatch):
        monkeypatch.setenv("RULE_DEBUG_TIMEOUT", "12.5")
        monkeypatch.setenv("RULE_DEBUG_ITEM_LIMIT", " 7 ")
        monkeypatch.setenv("RULE_DEBUG_WEBVIEW", "yes")
        monkeypatch.setenv("RULE_DEBUG_LOG_LEVEL", "debug")
        settings = DebugSettings.from_env()
        assert settings.request_timeout == 12.5
        assert settings.item_limit == 7
        assert settings.use_webview is True
        assert settings.log_level == "DEBUG"

    def test_bad_numbers_fall_back_with_warning(self, monkeypatch, caplog):
        monkeypatch.setenv("RULE_DEBUG_TIMEOUT", "thirty")
        monkeypatch.setenv("RULE_DEBUG_ITEM_LIMIT", "2.5")
        monkeypatch.setenv("RULE_DEBUG_MAX_REDIRECTS", "3")
        with caplog.at_level(logging.WARNING, logger="debug_settings"):
            settings = DebugSettings.from_env()
        assert settings.request_timeout == 30.0
        assert settings.item_limit == 20
        assert settings.max_redirects == 3
        messages = [r.getMessage() for r in caplog.records]
        assert any("RULE_DEBUG_TIMEOUT" in m for m in messages)
        assert any("RULE_DEBUG_ITEM_LIMIT" in m for m in messages)

    def test_blank_number_uses_default_quietly(self, monkeypatch, caplog):
        monkeypatch.setenv("RULE_DEBUG_SCRIPT_TIMEOUT", "  ")
        with caplog.at_level(logging.WARNING, logger="debug_settings"):
            assert DebugSettings.from_env().script_timeout == 5.0
        assert not caplog.records
