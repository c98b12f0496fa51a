"""Tests for the cross-platform process helpers"""

import os
import subprocess
import sys

import pytest

from craftstudio.core.utils.process import is_process_running, kill_process, terminate_process


def spawn_sleeper():
    return subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])


def test_current_process_is_running():
    assert is_process_running(os.getpid())


@pytest.mark.parametrize("pid", [None, 0, -1])
def test_invalid_pids(pid):
    assert not is_process_running(pid)


def test_terminate_missing_process():
    assert terminate_process(2 ** 22 + 12345) is False
    assert kill_process(2 ** 22 + 12345) is False


def test_terminate_process():
    proc = spawn_sleeper()
    try:
        assert terminate_process(proc.pid, timeout=5.0) is True
        proc.wait(timeout=5)
        assert not is_process_running(proc.pid)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_kill_process():
    proc = spawn_sleeper()
    try:
        assert kill_process(proc.pid) is True
        proc.wait(timeout=5)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
