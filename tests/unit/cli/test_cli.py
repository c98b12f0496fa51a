"""Tests for the craftstudio command line"""

import json

import pytest
from click.testing import CliRunner

from craftstudio import __version__
from craftstudio.cli import main as cli_main
from craftstudio.cli.main import cli, parse_assignment


class StubClient:
    def __init__(self, instance_id, url, **kwargs):
        self.instance_id = instance_id
        self.url = url

    async def start(self, data_dir=None, api_key=None):
        pass

    async def destroy(self):
        pass

    def on_connection(self, callback):
        return lambda: None

    def on_event(self, callback):
        return lambda: None


@pytest.fixture
def home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("CRAFTSTUDIO_HOME", str(home))
    monkeypatch.setenv("CRAFTSTUDIO_NODES_DIR", str(tmp_path / "nodes"))
    monkeypatch.setattr(cli_main, "DaemonClient", StubClient)
    return home


@pytest.fixture
def runner():
    return CliRunner()


def global_config(home):
    with open(home / "config.json", "r", encoding="utf-8") as f:
        return json.load(f)


def test_parse_assignment():
    assert parse_assignment("maxStorageGB=100") == ("maxStorageGB", 100)
    assert parse_assignment("name=Node 2") == ("name", "Node 2")
    assert parse_assignment("capabilities={\"storage\": true}") == ("capabilities", {"storage": True})


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_empty_listings(runner, home):
    result = runner.invoke(cli, ["instances"])
    assert result.exit_code == 0
    assert "No instances configured" in result.output

    result = runner.invoke(cli, ["daemons"])
    assert result.exit_code == 0
    assert "No daemons running" in result.output


def test_add_set_remove(runner, home, tmp_path):
    result = runner.invoke(cli, ["add", "Node 1", "--no-auto-start", "--storage"])
    assert result.exit_code == 0, result.output
    assert "Instance added" in result.output

    refs = global_config(home)["instances"]
    assert len(refs) == 1
    instance_id = refs[0]["id"]
    data_dir = refs[0]["dataDir"]
    assert data_dir == str(tmp_path / "nodes" / instance_id[:8])
    with open(f"{data_dir}/config.json", "r", encoding="utf-8") as f:
        assert json.load(f)["capabilities"] == ["client", "storage"]

    result = runner.invoke(cli, ["instances"])
    assert result.exit_code == 0
    assert "Instances (1)" in result.output

    result = runner.invoke(cli, ["set", instance_id, "maxStorageGB=100"])
    assert result.exit_code == 0, result.output
    assert "hot reload" in result.output
    with open(f"{data_dir}/config.json", "r", encoding="utf-8") as f:
        assert json.load(f)["max_storage_bytes"] == 100 * 1024 ** 3

    result = runner.invoke(cli, ["remove", instance_id])
    assert result.exit_code == 0, result.output
    assert global_config(home)["instances"] == []
    assert global_config(home)["activeInstanceId"] is None


def test_unknown_instance(runner, home):
    result = runner.invoke(cli, ["remove", "nope"])
    assert result.exit_code != 0
    assert "Unknown instance: nope" in result.output


def test_logs_unknown_pid(runner, home):
    result = runner.invoke(cli, ["logs", "424242"])
    assert result.exit_code != 0
    assert "No daemon with pid 424242" in result.output


def test_bad_assignment(runner, home):
    result = runner.invoke(cli, ["set", "whatever", "novalue"])
    assert result.exit_code == 2
    assert "expected KEY=VALUE" in result.output
