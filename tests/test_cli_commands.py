import json

import pytest
from typer.testing import CliRunner

from almondcloud import __version__
from almondcloud.cli import commands
from almondcloud.cli.commands import app
from almondcloud.config.access import clear_config_cache
from almondcloud.config.loader import save_config
from almondcloud.config.schema import AlmondConfig, ApiUserEntry

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("ALMOND_CONFIG", raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"almondcloud v{__version__}" in result.stdout


def test_config_init_refuses_to_overwrite(tmp_path):
    first = runner.invoke(app, ["config", "init"])
    assert first.exit_code == 0
    path = tmp_path / ".almondcloud" / "config.json"
    assert json.loads(path.read_text())["backend"]["address"] == "127.0.0.1:8001"

    second = runner.invoke(app, ["config", "init"])
    assert second.exit_code == 1
    assert "already exists" in second.stdout

    forced = runner.invoke(app, ["config", "init", "--force"])
    assert forced.exit_code == 0


def test_config_show_masks_tokens(tmp_path):
    config = AlmondConfig()
    config.api.tokens = {"secret-token-1": ApiUserEntry(cloud_id="c1", username="alice")}
    save_config(config, tmp_path / ".almondcloud" / "config.json")

    result = runner.invoke(app, ["config", "show", "--json"])
    assert result.exit_code == 0
    assert "secret-token-1" not in result.stdout
    assert "secr…" in result.stdout

    table = runner.invoke(app, ["config", "show"])
    assert table.exit_code == 0
    assert "127.0.0.1:8001" in table.stdout


def test_serve_refuses_busy_port(monkeypatch):
    monkeypatch.setattr(commands, "is_port_in_use", lambda host, port: True)
    result = runner.invoke(app, ["serve", "--port", "18080"])
    assert result.exit_code == 1
    assert "already in use" in result.stdout


def test_serve_reads_explicit_config_file(monkeypatch, tmp_path):
    seen = []
    monkeypatch.setattr(commands, "is_port_in_use", lambda host, port: seen.append(port) or True)
    cfg = AlmondConfig()
    cfg.api.port = 18555
    path = tmp_path / "frontend.json"
    save_config(cfg, path)

    result = runner.invoke(app, ["serve", "--config", str(path)])
    assert result.exit_code == 1
    assert seen == [18555]


@pytest.mark.network
def test_status_reports_unreachable_engine(monkeypatch):
    monkeypatch.setenv("ALMOND_BACKEND__ADDRESS", "127.0.0.1:1")
    result = runner.invoke(app, ["status", "--timeout", "1"])
    assert result.exit_code == 1
    assert "127.0.0.1:1" in result.stdout
