"""Tests for config loading and logging setup."""

import json
import logging
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

from treesync.config import SyncSettings, TreeSyncConfig, load_config
from treesync.config.loader import DEFAULT_CONFIG_TEMPLATE, config_search_path
from treesync.logging_setup import JSONFormatter, setup_logging


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep project-local and user-global config files out of the search."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


class TestModels:
    def test_defaults(self):
        config = TreeSyncConfig(device_id="laptop")
        assert config.workspace.root == "."
        assert ".git" in config.workspace.ignore_patterns
        assert config.remote.tree_id == "authoritative"
        assert config.sync.max_concurrency == 4
        assert config.sync.retry.max_attempts == 5
        assert config.log_level == "info"

    def test_device_id_defaults_to_hostname(self):
        assert TreeSyncConfig().device_id

    @pytest.mark.parametrize("bad", ["", "   ", "laptop:base"])
    def test_rejects_bad_device_id(self, bad):
        with pytest.raises(ValidationError):
            TreeSyncConfig(device_id=bad)

    def test_device_id_is_stripped(self):
        assert TreeSyncConfig(device_id="  laptop ").device_id == "laptop"

    def test_rejects_bad_numbers(self):
        with pytest.raises(ValidationError):
            SyncSettings(max_concurrency=0)
        with pytest.raises(ValidationError):
            SyncSettings(interval=-1)

    def test_rejects_unknown_log_level(self):
        with pytest.raises(ValidationError):
            TreeSyncConfig(device_id="laptop", log_level="verbose")


class TestLoadConfig:
    def test_defaults_without_files(self):
        config = load_config()
        assert config.sync == SyncSettings()
        assert config.remote.root == "~/.treesync/remote"

    def test_explicit_path(self, isolated):
        path = isolated / "custom.yaml"
        path.write_text("device_id: desk\nsync:\n  interval: 5\n  retry:\n    max_attempts: 2\n")
        config = load_config(str(path))
        assert config.device_id == "desk"
        assert config.sync.interval == 5
        assert config.sync.retry.max_attempts == 2
        assert config.sync.max_concurrency == 4

    def test_project_local_file(self, isolated):
        (isolated / "treesync.yaml").write_text("device_id: local-one\n")
        assert load_config().device_id == "local-one"

    def test_user_global_file(self, isolated):
        global_dir = isolated / "home" / ".treesync"
        global_dir.mkdir(parents=True)
        (global_dir / "config.yaml").write_text("device_id: global-one\n")
        assert load_config().device_id == "global-one"

    def test_cli_path_wins(self, isolated):
        (isolated / "treesync.yaml").write_text("device_id: local-one\n")
        (isolated / "cli.yaml").write_text("device_id: cli-one\n")
        assert load_config(str(isolated / "cli.yaml")).device_id == "cli-one"

    def test_empty_file_falls_through(self, isolated):
        (isolated / "empty.yaml").write_text("")
        (isolated / "treesync.yaml").write_text("device_id: next\n")
        assert load_config(str(isolated / "empty.yaml")).device_id == "next"

    def test_env_var_expansion(self, isolated, monkeypatch):
        monkeypatch.setenv("SHARED_DIR", "/mnt/shared")
        (isolated / "treesync.yaml").write_text(
            'device_id: laptop\nremote:\n  root: "${SHARED_DIR}/remote"\n'
        )
        assert load_config().remote.root == "/mnt/shared/remote"

    def test_env_var_fallback(self, isolated, monkeypatch):
        monkeypatch.delenv("SHARED_DIR", raising=False)
        (isolated / "treesync.yaml").write_text(
            'device_id: laptop\nremote:\n  root: "${SHARED_DIR:-/srv/treesync}/remote"\n'
        )
        assert load_config().remote.root == "/srv/treesync/remote"

    def test_undefined_env_var_names_the_file(self, isolated, monkeypatch):
        monkeypatch.delenv("SHARED_DIR", raising=False)
        path = isolated / "treesync.yaml"
        path.write_text('device_id: laptop\nremote:\n  root: "${SHARED_DIR}/remote"\n')
        with pytest.raises(ValueError, match=r"\$\{SHARED_DIR\}") as exc_info:
            load_config()
        assert "treesync.yaml" in str(exc_info.value)

    def test_non_mapping_file(self, isolated):
        (isolated / "treesync.yaml").write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config()

    def test_search_path_order(self, isolated):
        paths = config_search_path("custom.yaml")
        assert paths[0] == Path("custom.yaml")
        assert paths[1] == Path("treesync.yaml")
        assert paths[2] == isolated / "home" / ".treesync" / "config.yaml"
        assert len(config_search_path()) == 2

    def test_invalid_yaml(self, isolated):
        (isolated / "treesync.yaml").write_text("device_id: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config()

    def test_invalid_values(self, isolated):
        (isolated / "treesync.yaml").write_text("device_id: 'a:b'\n")
        with pytest.raises(ValueError, match="Invalid config"):
            load_config()

    def test_template_loads(self, isolated):
        (isolated / "treesync.yaml").write_text(DEFAULT_CONFIG_TEMPLATE)
        config = load_config()
        assert config.sync == SyncSettings()
        assert config.log_format == "text"


class TestLogging:
    def test_json_formatter(self):
        record = logging.LogRecord("treesync.sync", logging.WARNING, __file__, 1, "hello %s", ("world",), None)
        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "treesync.sync"
        assert entry["message"] == "hello world"
        assert "exception" not in entry

    def test_json_formatter_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("treesync", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]

    def test_setup_does_not_stack_handlers(self):
        setup_logging("debug", "json")
        logger = setup_logging("warn", "text")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not logger.propagate

    def test_json_handler(self):
        logger = setup_logging("info", "json")
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
