"""
Tests for configuration loading and logging setup.
"""

import logging

import pytest

from settings import DEFAULT_CONFIG_PATH, SECTIONS, Settings, setup_logging


class TestSettings:

    def test_default_file_loads(self, monkeypatch):
        monkeypatch.delenv("VAULT_ADDRESS", raising=False)
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        settings = Settings.load(str(DEFAULT_CONFIG_PATH))
        for name in SECTIONS:
            assert name in settings
        assert settings["chain"]["vault_address"] is None
        assert settings["chain"]["decimals"]["USDC"] == 6
        assert settings["logging"]["level"] == "DEBUG"
        assert settings["jobs"]["cron"]["daily_settle"] == "0 0 * * *"

    def test_env_substitution_and_defaults(self, tmp_path, monkeypatch):
        cfg = tmp_path / "ledger.yaml"
        cfg.write_text(
            "database:\n"
            "  data_dir: ${TEST_LEDGER_DIR:/tmp/default}\n"
            "  app_password: ${TEST_LEDGER_PW}\n"
            "oracle:\n"
            "  assets: [BTC, '${TEST_EXTRA_ASSET:ETH}']\n"
        )
        monkeypatch.setenv("TEST_LEDGER_PW", "s3cret")
        monkeypatch.delenv("TEST_LEDGER_DIR", raising=False)
        monkeypatch.delenv("TEST_EXTRA_ASSET", raising=False)
        settings = Settings.load(str(cfg))
        assert settings["database"]["data_dir"] == "/tmp/default"
        assert settings["database"]["app_password"] == "s3cret"
        assert settings["oracle"]["assets"] == ["BTC", "ETH"]
        assert settings["push"] == {}

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        cfg = tmp_path / "alt.yaml"
        cfg.write_text("push:\n  port: 9999\n")
        monkeypatch.setenv("LEDGER_CONFIG", str(cfg))
        assert Settings.load()["push"]["port"] == 9999

    def test_missing_file(self, tmp_path):
        with pytest.raises(RuntimeError):
            Settings.load(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        cfg = tmp_path / "bad.yaml"
        cfg.write_text("database: [unclosed\n")
        with pytest.raises(RuntimeError):
            Settings.load(str(cfg))

    def test_get_treats_null_as_missing(self):
        settings = Settings({"chain": None})
        assert settings.get("chain", {}) == {}
        assert len(settings) == 1


class TestSetupLogging:

    def test_logger_levels_applied(self):
        setup_logging({"level": "debug",
                       "loggers": {"tests.quiet": "error", "tests.chatty": "DEBUG"}})
        assert logging.getLogger("tests.quiet").level == logging.ERROR
        assert logging.getLogger("tests.chatty").level == logging.DEBUG
