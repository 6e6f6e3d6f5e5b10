"""Tests for runtime configuration."""

from pathlib import Path

from sessiontop.config import MonitorConfig


def test_defaults():
    """Test the default cadences and endpoint."""
    config = MonitorConfig()

    assert config.process_name == "claude"
    assert config.scan_interval == 1.0
    assert config.workdir_interval == 5.0
    assert config.placeholder_ttl == 3600.0
    assert config.hooks_base_url == "http://127.0.0.1:8998/api/hooks"


def test_from_env(monkeypatch, tmp_path):
    """Test environment variables override the defaults."""
    monkeypatch.setenv("SESSIONTOP_CLAUDE_DIR", str(tmp_path))
    monkeypatch.setenv("SESSIONTOP_PORT", "9100")
    monkeypatch.setenv("SESSIONTOP_SCAN_INTERVAL", "0.5")

    config = MonitorConfig.from_env()

    assert config.port == 9100
    assert config.scan_interval == 0.5
    assert config.projects_dir == Path(tmp_path) / "projects"
    assert config.allowed_log_roots == (Path(tmp_path),)


def test_overrides_win_over_env(monkeypatch):
    """Test explicit overrides beat the environment and None overrides are ignored."""
    monkeypatch.setenv("SESSIONTOP_PORT", "9100")
    monkeypatch.setenv("SESSIONTOP_PROCESS_NAME", "claude-env")

    config = MonitorConfig.from_env(port=9200, process_name=None)

    assert config.port == 9200
    assert config.process_name == "claude-env"
