"""
Cross-platform process helpers

Uniform process operations for Windows, Linux and macOS, backed by psutil.

Functions:
    - terminate_process: graceful stop (SIGTERM / TerminateProcess), kill on timeout
    - kill_process: forced stop (SIGKILL / TerminateProcess)
    - is_process_running: liveness check that treats zombies as dead
"""

import logging

import psutil

logger = logging.getLogger(__name__)


class ProcessError(Exception):
    """Process operation failed"""
    pass


def terminate_process(pid: int, timeout: float = 2.0) -> bool:
    """
    Gracefully terminate a process

    Sends a terminate request, waits up to ``timeout`` seconds and falls back
    to a kill if the process is still alive.

    Args:
        pid: Process ID
        timeout: Seconds to wait for the process to exit

    Returns:
        True: process terminated
        False: process did not exist or had already exited

    Raises:
        ProcessError: termination failed
    """
    if not is_process_running(pid):
        logger.debug(f"Process {pid} is not running")
        return False

    try:
        proc = psutil.Process(pid)
        proc.terminate()
        logger.info(f"Sent terminate to process {pid}")

        try:
            proc.wait(timeout=timeout)
            logger.info(f"Process {pid} terminated gracefully")
            return True
        except psutil.TimeoutExpired:
            logger.warning(f"Process {pid} did not terminate after {timeout}s, killing")

        proc.kill()
        try:
            proc.wait(timeout=1.0)
        except psutil.TimeoutExpired:
            raise ProcessError(f"Process {pid} survived kill")
        logger.info(f"Process {pid} force killed")
        return True

    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied as e:
        raise ProcessError(f"Permission denied to terminate process {pid}") from e


def kill_process(pid: int) -> bool:
    """
    Force kill a process

    Args:
        pid: Process ID

    Returns:
        True: process killed
        False: process did not exist

    Raises:
        ProcessError: kill failed
    """
    if not is_process_running(pid):
        logger.debug(f"Process {pid} is not running")
        return False

    try:
        proc = psutil.Process(pid)
        proc.kill()
        logger.info(f"Sent kill to process {pid}")
        try:
            proc.wait(timeout=1.0)
        except psutil.TimeoutExpired:
            raise ProcessError(f"Process {pid} survived kill")
        return True
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied as e:
        raise ProcessError(f"Permission denied to kill process {pid}") from e


def is_process_running(pid: int) -> bool:
    """
    Check whether a process is alive

    Zombie processes (exited, waiting to be reaped) count as not running.
    """
    if pid is None or pid <= 0:
        return False

    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            logger.debug(f"Process {pid} is zombie (not running)")
            return False
        return proc.is_running()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True
