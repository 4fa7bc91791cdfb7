"""Tests for the treesync CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from treesync.cli import app
from treesync.storage import LocalObjectStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("TREESYNC_PRESIGN_SECRET", "cli-secret")
    return tmp_path


def _device(root: Path, name: str) -> str:
    """Write a config for device *name*; every device shares root/remote."""
    workspace = root / name
    workspace.mkdir(exist_ok=True)
    config = {
        "device_id": name,
        "workspace": {"root": str(workspace)},
        "remote": {"root": str(root / "remote")},
        "sync": {"retry": {"max_attempts": 2, "base_delay": 0, "max_delay": 0}},
        "log_level": "error",
    }
    path = root / f"{name}.yaml"
    path.write_text(yaml.dump(config))
    return str(path)


def _run(config: str, *args: str):
    return runner.invoke(app, ["--config", config, *args])


# ── config ───────────────────────────────────────────────────────────


def test_config_init(isolated: Path):
    result = runner.invoke(app, ["config", "init"])
    assert result.exit_code == 0
    assert (isolated / "treesync.yaml").is_file()

    again = runner.invoke(app, ["config", "init"])
    assert again.exit_code == 1
    assert "already exists" in again.output

    forced = runner.invoke(app, ["config", "init", "--force"])
    assert forced.exit_code == 0


def test_config_show(isolated: Path):
    result = _run(_device(isolated, "laptop"), "config", "show")
    assert result.exit_code == 0
    assert "device_id: laptop" in result.output


def test_invalid_config_exits(isolated: Path):
    bad = isolated / "bad.yaml"
    bad.write_text("device_id: 'a:b'\n")
    result = runner.invoke(app, ["--config", str(bad), "status"])
    assert result.exit_code == 1
    assert "Invalid config" in result.output


# ── init / scan / status ─────────────────────────────────────────────


def test_init_writes_config_and_state(isolated: Path):
    (isolated / "notes.txt").write_text("hello")
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output
    assert (isolated / "treesync.yaml").is_file()
    assert (isolated / ".treesync" / "state.db").is_file()
    assert "treesync initialized" in result.output


def test_scan_json(isolated: Path):
    config = _device(isolated, "laptop")
    (isolated / "laptop" / "docs").mkdir()
    (isolated / "laptop" / "docs" / "a.md").write_text("alpha")
    (isolated / "laptop" / "b.txt").write_text("beta")

    result = _run(config, "scan", "--json")
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["deviceId"] == "laptop"
    assert sorted(data["entries"]) == ["b.txt", "docs/a.md"]


def test_status_lists_pending_uploads(isolated: Path):
    config = _device(isolated, "laptop")
    (isolated / "laptop" / "a.txt").write_text("alpha")
    result = _run(config, "status")
    assert result.exit_code == 0, result.output
    assert "Pending uploads (1)" in result.output


# ── sync / diff ──────────────────────────────────────────────────────


def test_sync_between_devices(isolated: Path):
    laptop = _device(isolated, "laptop")
    desktop = _device(isolated, "desktop")
    (isolated / "laptop" / "a.txt").write_text("alpha")

    first = _run(laptop, "sync")
    assert first.exit_code == 0, first.output
    assert "Synced." in first.output

    second = _run(desktop, "sync")
    assert second.exit_code == 0, second.output
    assert (isolated / "desktop" / "a.txt").read_text() == "alpha"

    again = _run(desktop, "sync")
    assert "Already in sync" in again.output

    status = _run(laptop, "status")
    assert "No pending uploads." in status.output


def test_diff(isolated: Path):
    config = _device(isolated, "laptop")
    (isolated / "laptop" / "a.txt").write_text("alpha")

    result = _run(config, "diff", "--json")
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert list(data["added"]) == ["a.txt"]
    assert data["removed"] == {}

    _run(config, "sync")
    clean = _run(config, "diff")
    assert "No differences." in clean.output


# ── url / gc ─────────────────────────────────────────────────────────


def test_url_for_synced_file(isolated: Path):
    config = _device(isolated, "laptop")
    (isolated / "laptop" / "a.txt").write_text("alpha")
    _run(config, "sync")

    result = _run(config, "url", "a.txt", "--ttl", "60")
    assert result.exit_code == 0, result.output
    assert "file://" in result.output
    assert "signature=" in result.output


def test_url_for_unknown_file(isolated: Path):
    result = _run(_device(isolated, "laptop"), "url", "missing.txt")
    assert result.exit_code == 1
    assert "not in the remote tree" in result.output


def test_gc_dry_run_keeps_orphans(isolated: Path):
    config = _device(isolated, "laptop")
    (isolated / "laptop" / "a.txt").write_text("alpha")
    _run(config, "sync")
    blobs = LocalObjectStore(isolated / "remote" / "blobs", secret=b"x")
    (blobs.root / "objects" / "orphan").write_bytes(b"stale")

    result = _run(config, "gc", "--dry-run", "--min-age", "0")
    assert result.exit_code == 0, result.output
    assert "Would delete 1" in result.output
    assert (blobs.root / "objects" / "orphan").exists()

    _run(config, "gc", "--min-age", "0")
    assert not (blobs.root / "objects" / "orphan").exists()
    assert len(blobs.keys()) == 1


def test_gc_keeps_recent_orphans_by_default(isolated: Path):
    config = _device(isolated, "laptop")
    (isolated / "laptop" / "a.txt").write_text("alpha")
    _run(config, "sync")
    blobs = LocalObjectStore(isolated / "remote" / "blobs", secret=b"x")
    (blobs.root / "objects" / "orphan").write_bytes(b"fresh")

    result = _run(config, "gc")
    assert result.exit_code == 0, result.output
    assert "No unreferenced objects." in result.output
    assert (blobs.root / "objects" / "orphan").exists()
