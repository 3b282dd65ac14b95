"""Tests for engine configuration and logging setup."""

import logging
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from pkgbundler.config import (
    DEFAULT_CACHE_DIR,
    ENV_CACHE_DIR,
    EngineConfig,
    ToolchainSource,
    get_config_value,
    load_config,
)
from pkgbundler.errors import ConfigurationError
from pkgbundler.logutil import CustomFormatter, ProgressReporter, setup_logging

SAMPLE_CONFIG = """\
[toolchain]
cache_dir = "/var/cache/pkgbundler"
timeout = 60
retries = 5
backoff = 1.5

[toolchain.wix]
url = "https://mirror.example.com/wix314-binaries.zip"
sha256 = "abc123"

[toolchain.appimagetool]
path = "~/bin/appimagetool"

[checksum]
algorithm = "sha512"
"""


class TestLoadConfig:
    def test_explicit_path(self, temp_dir):
        path = temp_dir / "custom.toml"
        path.write_text(SAMPLE_CONFIG)
        config = load_config(path)
        assert config["toolchain"]["retries"] == 5

    def test_explicit_path_missing(self, temp_dir):
        with pytest.raises(ConfigurationError, match="Config file not found"):
            load_config(temp_dir / "missing.toml")

    def test_search_order(self, temp_dir, monkeypatch):
        (temp_dir / "pkgbundler.toml").write_text('[checksum]\nalgorithm = "md5"\n')
        (temp_dir / ".pkgbundler.toml").write_text('[checksum]\nalgorithm = "sha1"\n')
        monkeypatch.chdir(temp_dir)
        assert load_config()["checksum"]["algorithm"] == "sha1"

    def test_no_config(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        assert load_config() == {}

    def test_invalid_toml(self, temp_dir):
        path = temp_dir / "bad.toml"
        path.write_text("[toolchain\nretries = ")
        with pytest.raises(ConfigurationError, match="Invalid config file"):
            load_config(path)


class TestGetConfigValue:
    def test_nested_sections(self):
        config = {"toolchain": {"retries": 2, "wix": {"url": "u"}}}
        assert get_config_value(config, "toolchain", "retries") == 2
        assert get_config_value(config, "toolchain.wix", "url") == "u"

    def test_defaults(self):
        config = {"toolchain": {"retries": 2}}
        assert get_config_value(config, "checksum", "algorithm", "sha256") == "sha256"
        assert get_config_value(config, "toolchain.retries", "x", "d") == "d"
        assert get_config_value({}, "toolchain.wix", "url") is None


class TestEngineConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv(ENV_CACHE_DIR, raising=False)
        config = EngineConfig.from_dict({})
        assert config.cache_dir == DEFAULT_CACHE_DIR.expanduser()
        assert config.fetch_retries == 3
        assert config.checksum_algorithm == "sha256"
        assert config.toolchains == {}

    def test_from_file(self, temp_dir, monkeypatch):
        path = temp_dir / "custom.toml"
        path.write_text(SAMPLE_CONFIG)
        monkeypatch.delenv(ENV_CACHE_DIR, raising=False)
        config = EngineConfig.from_dict(load_config(path))
        assert config.cache_dir == Path("/var/cache/pkgbundler")
        assert config.fetch_timeout == 60.0
        assert config.fetch_retries == 5
        assert config.fetch_backoff == 1.5
        assert config.checksum_algorithm == "sha512"
        assert config.toolchains["wix"] == ToolchainSource(
            url="https://mirror.example.com/wix314-binaries.zip", sha256="abc123"
        )
        assert config.toolchains["appimagetool"].path == Path("~/bin/appimagetool").expanduser()

    def test_cache_dir_from_environment(self, temp_dir):
        with patch.dict(os.environ, {ENV_CACHE_DIR: str(temp_dir)}):
            config = EngineConfig.from_dict(
                {"toolchain": {"cache_dir": "/var/cache/pkgbundler"}}
            )
        assert config.cache_dir == temp_dir

    def test_invalid_retries(self):
        with pytest.raises(ConfigurationError, match="at least 1"):
            EngineConfig.from_dict({"toolchain": {"retries": 0}})

    def test_invalid_timeout(self):
        with pytest.raises(ConfigurationError, match="Invalid \\[toolchain\\] value"):
            EngineConfig.from_dict({"toolchain": {"timeout": "soon"}})


class TestLogging:
    def _record(self, level=logging.WARNING):
        return logging.LogRecord(
            "pkgbundler.engine", level, __file__, 1, "deb: %s", ("no icons",), None
        )

    def test_plain_format(self):
        text = CustomFormatter(use_color=False).format(self._record())
        assert "\x1b[" not in text
        assert " - WARNING - " in text
        assert text.endswith(" - deb: no icons")

    def test_color_format(self):
        text = CustomFormatter(use_color=True).format(self._record(logging.ERROR))
        assert CustomFormatter.color.red in text

    def test_setup_logging(self):
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            setup_logging(debug=False, use_color=False)
            assert root.level == logging.INFO
            assert isinstance(root.handlers[0].formatter, CustomFormatter)
            setup_logging(debug=True)
            assert root.level == logging.DEBUG
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])


class TestProgressReporter:
    def test_reports_through_logging(self, caplog):
        log = logging.getLogger("pkgbundler.test.progress")
        with caplog.at_level(logging.INFO, logger=log.name):
            with ProgressReporter("Waiting for notarization", interval=0.01, log=log):
                time.sleep(0.05)
        messages = [r.getMessage() for r in caplog.records]
        assert messages[0] == "Waiting for notarization..."
        assert any("elapsed" in m for m in messages[1:-1])
        assert messages[-1].startswith("Waiting for notarization done after")

    def test_thread_stopped(self):
        reporter = ProgressReporter("Working", interval=60.0)
        with reporter:
            pass
        assert not reporter._thread.is_alive()
