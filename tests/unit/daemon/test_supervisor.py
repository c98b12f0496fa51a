"""Tests for the daemon process supervisor"""

import asyncio
import json
import os
import socket
import stat
import sys

import pytest

from craftstudio.core.utils.process import is_process_running
from craftstudio.daemon.errors import DaemonAlreadyRunning, DaemonBinaryNotFound, DaemonNotFound
from craftstudio.daemon.logging_utils import DaemonStructuredLogger
from craftstudio.daemon.supervisor import DaemonDescriptor, DaemonSupervisor, port_from_multiaddr

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as the daemon")


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def write_pidfile(run_dir, pid, ws_port, **extra):
    data = {
        "pid": pid,
        "ws_port": ws_port,
        "data_dir": "/data/x",
        "socket_path": "/tmp/x.sock",
        "listen_addr": "/ip4/0.0.0.0/tcp/44001",
        "primary": True,
        "command": "craftobj-daemon",
        "started_at": 1.0,
    }
    data.update(extra)
    run_dir.mkdir(parents=True, exist_ok=True)
    path = run_dir / f"daemon-{ws_port}.pid"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def make_supervisor(run_dir, **kwargs):
    return DaemonSupervisor(run_dir, structured_logger=DaemonStructuredLogger("tests.daemons"), **kwargs)


def fake_daemon_script(tmp_path):
    script = tmp_path / "fake-daemon"
    script.write_text('#!/bin/sh\necho "fake daemon $@"\nexec sleep 30\n', encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def test_port_from_multiaddr():
    assert port_from_multiaddr("/ip4/0.0.0.0/tcp/44001") == 44001
    assert port_from_multiaddr("garbage") is None


def test_build_command(tmp_path):
    supervisor = make_supervisor(tmp_path / "run")
    command = supervisor._build_command(
        "craftobj-daemon", "/data/a1", "/tmp/a1.sock", 9091, "/ip4/0.0.0.0/tcp/4001", ["client", "storage"]
    )
    assert command == [
        "craftobj-daemon",
        "--data-dir", "/data/a1",
        "--socket", "/tmp/a1.sock",
        "--ws-port", "9091",
        "--listen", "/ip4/0.0.0.0/tcp/4001",
        "--capabilities", "client,storage",
    ]


class TestRecovery:

    @pytest.mark.asyncio
    async def test_live_pidfile_recovered(self, tmp_path):
        run_dir = tmp_path / "run"
        write_pidfile(run_dir, os.getpid(), 9555)

        supervisor = make_supervisor(run_dir)
        daemons = await supervisor.list_daemons()

        assert [(d.pid, d.ws_port) for d in daemons] == [(os.getpid(), 9555)]
        assert daemons[0].listen_addr == "/ip4/0.0.0.0/tcp/44001"

    @pytest.mark.asyncio
    async def test_dead_pidfile_pruned(self, tmp_path):
        run_dir = tmp_path / "run"
        path = write_pidfile(run_dir, 2 ** 22 + 12345, 9556)

        supervisor = make_supervisor(run_dir)

        assert await supervisor.list_daemons() == []
        assert not path.exists()

    def test_corrupt_pidfile_removed(self, tmp_path):
        run_dir = tmp_path / "run"
        run_dir.mkdir()
        bad = run_dir / "daemon-9557.pid"
        bad.write_text("{", encoding="utf-8")

        make_supervisor(run_dir)

        assert not bad.exists()


class TestStart:

    @pytest.mark.asyncio
    async def test_tracked_port_is_already_running(self, tmp_path):
        run_dir = tmp_path / "run"
        write_pidfile(run_dir, os.getpid(), 9558)
        supervisor = make_supervisor(run_dir)

        with pytest.raises(DaemonAlreadyRunning) as exc_info:
            await supervisor.start_daemon(DaemonDescriptor(data_dir=str(tmp_path / "d"), ws_port=9558))

        assert "already running" in str(exc_info.value)
        assert exc_info.value.ws_port == 9558

    @pytest.mark.asyncio
    async def test_port_in_use_is_already_running(self, tmp_path):
        supervisor = make_supervisor(tmp_path / "run")
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]

            with pytest.raises(DaemonAlreadyRunning) as exc_info:
                await supervisor.start_daemon(DaemonDescriptor(data_dir=str(tmp_path / "d"), ws_port=port))

        assert "already in use" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        supervisor = make_supervisor(tmp_path / "run")
        descriptor = DaemonDescriptor(
            data_dir=str(tmp_path / "d"),
            ws_port=free_port(),
            binary_path=str(tmp_path / "no-such-daemon"),
        )
        with pytest.raises(DaemonBinaryNotFound):
            await supervisor.start_daemon(descriptor)

    @posix_only
    @pytest.mark.asyncio
    async def test_start_writes_config_logs_and_stops(self, tmp_path):
        run_dir = tmp_path / "run"
        supervisor = make_supervisor(run_dir, binary=str(fake_daemon_script(tmp_path)))
        data_dir = tmp_path / "node"
        ws_port = free_port()

        proc = await supervisor.start_daemon(
            DaemonDescriptor(data_dir=str(data_dir), ws_port=ws_port, capabilities=["client", "storage"])
        )
        try:
            assert is_process_running(proc.pid)
            assert proc.primary is True
            assert proc.socket_path == "/tmp/craftobj.sock"
            assert proc.listen_addr == "/ip4/0.0.0.0/tcp/44001"
            assert (run_dir / f"daemon-{ws_port}.pid").exists()

            config = json.loads((data_dir / "config.json").read_text(encoding="utf-8"))
            assert config["capabilities"] == ["client", "storage"]
            assert config["ws_port"] == ws_port
            assert config["listen_port"] == 44001
            assert config["max_storage_bytes"] == 10_737_418_240
            assert config["boot_peers"] == []

            daemons = await supervisor.list_daemons()
            assert [d.pid for d in daemons] == [proc.pid]
        finally:
            await supervisor.stop_daemon(proc.pid)

        assert not is_process_running(proc.pid)
        assert not (run_dir / f"daemon-{ws_port}.pid").exists()
        assert await supervisor.list_daemons() == []

    @posix_only
    @pytest.mark.asyncio
    async def test_boot_peers_from_running_daemons(self, tmp_path):
        run_dir = tmp_path / "run"
        write_pidfile(run_dir, os.getpid(), 9559, listen_addr="/ip4/0.0.0.0/tcp/44007")
        supervisor = make_supervisor(run_dir, binary=str(fake_daemon_script(tmp_path)))
        data_dir = tmp_path / "node"
        data_dir.mkdir()
        (data_dir / "config.json").write_text(
            json.dumps({"ws_port": 1, "custom": "keep"}), encoding="utf-8"
        )

        proc = await supervisor.start_daemon(DaemonDescriptor(data_dir=str(data_dir), ws_port=free_port()))
        try:
            assert proc.primary is False
            config = json.loads((data_dir / "config.json").read_text(encoding="utf-8"))
            assert config["boot_peers"] == ["/ip4/127.0.0.1/tcp/44007"]
            assert config["custom"] == "keep"
            assert config["ws_port"] == 1
        finally:
            await supervisor.stop_daemon(proc.pid)

    @posix_only
    @pytest.mark.asyncio
    async def test_get_logs(self, tmp_path):
        supervisor = make_supervisor(tmp_path / "run", binary=str(fake_daemon_script(tmp_path)))
        proc = await supervisor.start_daemon(
            DaemonDescriptor(data_dir=str(tmp_path / "node"), ws_port=free_port())
        )
        try:
            lines = []
            for _ in range(200):
                lines = await supervisor.get_logs(proc.pid)
                if lines:
                    break
                await asyncio.sleep(0.01)
            assert lines[0].startswith("fake daemon --data-dir")
            assert await supervisor.get_logs(proc.pid, since=1) == lines[1:]
        finally:
            await supervisor.stop_daemon(proc.pid)


class TestStop:

    @pytest.mark.asyncio
    async def test_unknown_pid(self, tmp_path):
        supervisor = make_supervisor(tmp_path / "run")
        with pytest.raises(DaemonNotFound):
            await supervisor.stop_daemon(424242)

    @pytest.mark.asyncio
    async def test_logs_unknown_pid(self, tmp_path):
        supervisor = make_supervisor(tmp_path / "run")
        with pytest.raises(DaemonNotFound):
            await supervisor.get_logs(424242)


def test_log_tail_is_bounded(tmp_path):
    log_file = tmp_path / "daemon.log"
    log_file.write_text("".join(f"line {i}\n" for i in range(20)), encoding="utf-8")
    assert DaemonSupervisor._tail(log_file, 5) == [f"line {i}" for i in range(15, 20)]
