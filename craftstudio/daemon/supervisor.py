"""
Daemon Process Supervisor

Manages the lifecycle of locally-launched daemon processes.

Features:
- Start/stop daemon processes
- Control port conflict detection
- PID file tracking so running daemons survive a CraftStudio restart
- Initial runtime config and boot peer wiring for multi-node setups
- Per-daemon output capture to a log file
"""

import asyncio
import json
import logging
import platform
import shutil
import socket
import subprocess
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from craftstudio.config.runtime import (
    DEFAULT_DAEMON_LISTEN_PORT,
    DEFAULT_DAEMON_WS_PORT,
    RuntimeConfigError,
    WorkerRuntimeConfig,
    read_runtime_config,
    runtime_config_path,
    write_runtime_config,
)
from craftstudio.core.utils.process import ProcessError, is_process_running, terminate_process
from craftstudio.daemon.errors import (
    DaemonAlreadyRunning,
    DaemonBinaryNotFound,
    DaemonNotFound,
    SupervisorError,
)
from craftstudio.daemon.logging_utils import DaemonStructuredLogger, OperationTimer, get_daemon_logger

logger = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 500


@dataclass
class DaemonDescriptor:
    """Launch request; absent fields are derived from the launch index"""
    data_dir: Optional[str] = None
    socket_path: Optional[str] = None
    ws_port: Optional[int] = None
    listen_addr: Optional[str] = None
    binary_path: Optional[str] = None
    capabilities: List[str] = field(default_factory=lambda: ["client"])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DaemonProcess:
    """A running daemon as tracked by the supervisor (mirrors its pid file)"""
    pid: int
    ws_port: int
    data_dir: str
    socket_path: str
    listen_addr: str
    primary: bool = False
    command: str = ""
    started_at: float = field(default_factory=time.time)
    log_file: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DaemonProcess":
        return cls(
            pid=int(data["pid"]),
            ws_port=int(data["ws_port"]),
            data_dir=data.get("data_dir", ""),
            socket_path=data.get("socket_path", ""),
            listen_addr=data.get("listen_addr", ""),
            primary=bool(data.get("primary", False)),
            command=data.get("command", ""),
            started_at=float(data.get("started_at", time.time())),
            log_file=data.get("log_file"),
        )


def port_from_multiaddr(addr: str) -> Optional[int]:
    """``/ip4/0.0.0.0/tcp/44001`` -> 44001"""
    try:
        return int(addr.rstrip("/").rsplit("/", 1)[-1])
    except (ValueError, AttributeError):
        return None


class DaemonSupervisor:
    """
    Supervises daemon processes

    Usage:
        supervisor = DaemonSupervisor(run_dir=Path("~/.craftstudio/run"))
        proc = await supervisor.start_daemon(DaemonDescriptor(data_dir="/data/a1", ws_port=9091))
        await supervisor.stop_daemon(proc.pid)
    """

    def __init__(
        self,
        run_dir: Path,
        binary: str = "craftobj-daemon",
        host: str = "127.0.0.1",
        structured_logger: Optional[DaemonStructuredLogger] = None,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
        stop_timeout: float = 2.0,
    ):
        self.run_dir = Path(run_dir).expanduser()
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.binary = binary
        self.host = host
        self.slog = structured_logger or get_daemon_logger()
        self.log_capacity = log_capacity
        self.stop_timeout = stop_timeout

        self._processes: Dict[int, DaemonProcess] = {}
        self._popen: Dict[int, subprocess.Popen] = {}
        self._next_index = 0

        self._recover_processes()

    # ---------- PID files ----------

    def _pidfile_path(self, ws_port: int) -> Path:
        return self.run_dir / f"daemon-{ws_port}.pid"

    def _log_path(self, ws_port: int) -> Path:
        return self.run_dir / f"daemon-{ws_port}.log"

    def _write_pidfile(self, proc: DaemonProcess):
        pidfile = self._pidfile_path(proc.ws_port)
        try:
            with open(pidfile, "w", encoding="utf-8") as f:
                json.dump(proc.to_dict(), f, indent=2)
            logger.debug(f"Wrote pidfile: {pidfile}")
        except Exception as e:
            logger.error(f"Failed to write pidfile {pidfile}: {e}")

    def _remove_pidfile(self, ws_port: int):
        pidfile = self._pidfile_path(ws_port)
        try:
            if pidfile.exists():
                pidfile.unlink()
                logger.debug(f"Removed pidfile: {pidfile}")
        except Exception as e:
            logger.error(f"Failed to remove pidfile {pidfile}: {e}")

    def _recover_processes(self):
        """Re-adopt daemons started by a previous supervisor"""
        for pidfile in sorted(self.run_dir.glob("daemon-*.pid")):
            try:
                with open(pidfile, "r", encoding="utf-8") as f:
                    proc = DaemonProcess.from_dict(json.load(f))
            except Exception as e:
                logger.error(f"Failed to recover from pidfile {pidfile}: {e}")
                pidfile.unlink(missing_ok=True)
                continue

            if is_process_running(proc.pid):
                self._processes[proc.pid] = proc
                self._next_index += 1
                logger.info(f"Recovered daemon on ws_port {proc.ws_port} (PID {proc.pid}) from pidfile")
                self.slog.log_operation(logging.INFO, "recover", pid=proc.pid, ws_port=proc.ws_port)
            else:
                pidfile.unlink(missing_ok=True)
                logger.debug(f"Cleaned up stale pidfile: {pidfile}")

    def _prune(self):
        """Forget daemons that have exited"""
        for pid, proc in list(self._processes.items()):
            popen = self._popen.get(pid)
            if popen is not None and popen.poll() is not None:
                exited = True
                returncode = popen.returncode
            else:
                exited = not is_process_running(pid)
                returncode = None
            if exited:
                logger.info(f"Daemon on ws_port {proc.ws_port} (PID {pid}) exited (code={returncode})")
                self._forget(pid)

    def _forget(self, pid: int):
        proc = self._processes.pop(pid, None)
        self._popen.pop(pid, None)
        if proc is not None:
            self._remove_pidfile(proc.ws_port)

    # ---------- Helpers ----------

    def _check_port_available(self, host: str, port: int) -> Tuple[bool, Optional[str]]:
        """
        Check if port is available

        Returns: (is_available, occupant_info)
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)

        try:
            if sock.connect_ex((host, port)) == 0:
                return False, f"Port {port} already in use, daemon already running"
            return True, None
        except socket.error as e:
            logger.warning(f"Socket error checking port {port}: {e}")
            return False, f"Socket error: {e}"
        finally:
            sock.close()

    def resolve_binary(self, binary_path: Optional[str] = None) -> str:
        """
        Resolve the daemon executable

        Raises:
            DaemonBinaryNotFound: not an existing file and not on PATH
        """
        candidate = binary_path or self.binary
        expanded = Path(candidate).expanduser()
        if expanded.is_file():
            return str(expanded)
        found = shutil.which(candidate)
        if found:
            return found
        raise DaemonBinaryNotFound(f"Daemon binary not found: {candidate}")

    def _build_command(
        self,
        binary: str,
        data_dir: str,
        socket_path: str,
        ws_port: int,
        listen_addr: str,
        capabilities: List[str],
    ) -> List[str]:
        """
        Build the daemon command line

        Example:
            -> ["craftobj-daemon", "--data-dir", "/data/a1", "--socket", "/tmp/craftobj.sock",
                "--ws-port", "9091", "--listen", "/ip4/0.0.0.0/tcp/44001",
                "--capabilities", "client,storage"]
        """
        return [
            binary,
            "--data-dir", data_dir,
            "--socket", socket_path,
            "--ws-port", str(ws_port),
            "--listen", listen_addr,
            "--capabilities", ",".join(capabilities),
        ]

    def _boot_peers(self) -> List[str]:
        """Local listen addresses of the daemons already running"""
        peers = []
        for proc in self._processes.values():
            port = port_from_multiaddr(proc.listen_addr)
            peers.append(f"/ip4/127.0.0.1/tcp/{port or 0}")
        return peers

    def _prepare_runtime_config(
        self,
        data_dir: str,
        capabilities: List[str],
        listen_port: int,
        ws_port: int,
        socket_path: str,
        boot_peers: List[str],
    ):
        """Write an initial config.json, or refresh boot_peers in an existing one"""
        path = runtime_config_path(data_dir)
        if not path.exists():
            config = WorkerRuntimeConfig(
                capabilities=list(capabilities),
                listen_port=listen_port,
                ws_port=ws_port,
                socket_path=socket_path,
                extra={"boot_peers": boot_peers},
            )
            try:
                write_runtime_config(data_dir, config)
            except OSError as e:
                logger.warning(f"Failed to write initial daemon config to {path}: {e}")
            return

        if not boot_peers:
            return

        try:
            existing = read_runtime_config(data_dir)
        except RuntimeConfigError as e:
            logger.warning(f"Not updating boot_peers: {e}")
            return
        if existing is None:
            return
        existing.extra["boot_peers"] = boot_peers
        try:
            write_runtime_config(data_dir, existing)
        except OSError as e:
            logger.warning(f"Failed to update boot_peers in {path}: {e}")

    # ---------- Operations ----------

    async def list_daemons(self) -> List[DaemonProcess]:
        """All running daemons, oldest first"""
        self._prune()
        return sorted(self._processes.values(), key=lambda p: p.started_at)

    async def start_daemon(self, descriptor: DaemonDescriptor) -> DaemonProcess:
        """
        Start a daemon

        Raises:
            DaemonAlreadyRunning: the control port is already owned
            DaemonBinaryNotFound: executable could not be resolved
            SupervisorError: the process could not be spawned
        """
        self._prune()

        index = self._next_index
        primary = index == 0
        ws_port = descriptor.ws_port or DEFAULT_DAEMON_WS_PORT + index
        data_dir = descriptor.data_dir or (
            str(Path.home() / ".craftobj") if primary else f"/tmp/craftobj-node-{index}"
        )
        socket_path = descriptor.socket_path or (
            "/tmp/craftobj.sock" if primary else f"/tmp/craftobj-{index}.sock"
        )
        listen_addr = descriptor.listen_addr or f"/ip4/0.0.0.0/tcp/{DEFAULT_DAEMON_LISTEN_PORT + index}"
        listen_port = port_from_multiaddr(listen_addr) or DEFAULT_DAEMON_LISTEN_PORT + index
        capabilities = list(descriptor.capabilities) or ["client"]

        if any(p.ws_port == ws_port for p in self._processes.values()):
            message = f"A daemon is already running on ws_port {ws_port}"
            self.slog.log_start_failure(ws_port, "ALREADY_RUNNING", message)
            raise DaemonAlreadyRunning(message, ws_port=ws_port)

        available, occupant = self._check_port_available(self.host, ws_port)
        if not available:
            message = occupant or f"Port {ws_port} already in use"
            self.slog.log_start_failure(ws_port, "PORT_IN_USE", message)
            raise DaemonAlreadyRunning(message, ws_port=ws_port)

        try:
            binary = self.resolve_binary(descriptor.binary_path)
        except DaemonBinaryNotFound as e:
            self.slog.log_start_failure(ws_port, "BINARY_NOT_FOUND", str(e))
            raise

        data_path = Path(data_dir).expanduser()
        await asyncio.to_thread(data_path.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(
            self._prepare_runtime_config,
            str(data_path), capabilities, listen_port, ws_port, socket_path, self._boot_peers(),
        )

        command = self._build_command(binary, str(data_path), socket_path, ws_port, listen_addr, capabilities)
        command_str = " ".join(command)
        log_file = self._log_path(ws_port)

        logger.info(f"Starting daemon on ws_port {ws_port}: {command_str}")
        self.slog.log_start(ws_port, str(data_path), command_str)

        with OperationTimer() as timer:
            popen_kwargs: Dict[str, Any] = {
                "stdin": subprocess.DEVNULL,
                "stderr": subprocess.STDOUT,
            }
            # Windows: Use CREATE_NO_WINDOW flag to prevent CMD window popup
            if platform.system() == "Windows":
                popen_kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
            else:
                popen_kwargs["start_new_session"] = True

            try:
                with open(log_file, "ab") as log_handle:
                    process = subprocess.Popen(command, stdout=log_handle, **popen_kwargs)
            except FileNotFoundError as e:
                self.slog.log_start_failure(ws_port, "BINARY_NOT_FOUND", str(e))
                raise DaemonBinaryNotFound(f"Daemon binary not found: {binary}") from e
            except OSError as e:
                self.slog.log_start_failure(ws_port, "SPAWN_FAILED", str(e))
                raise SupervisorError(f"Failed to start daemon: {e}") from e

        proc = DaemonProcess(
            pid=process.pid,
            ws_port=ws_port,
            data_dir=str(data_path),
            socket_path=socket_path,
            listen_addr=listen_addr,
            primary=primary,
            command=command_str,
            log_file=str(log_file),
        )
        self._processes[proc.pid] = proc
        self._popen[proc.pid] = process
        self._next_index += 1
        self._write_pidfile(proc)

        self.slog.log_start_success(ws_port, proc.pid, elapsed_ms=timer.elapsed_ms())
        return proc

    async def stop_daemon(self, pid: int) -> None:
        """
        Stop a daemon: graceful terminate, kill on timeout

        Raises:
            DaemonNotFound: pid is not a supervised daemon
            SupervisorError: the process could not be stopped
        """
        proc = self._processes.get(pid)
        if proc is None:
            raise DaemonNotFound(f"No daemon with pid {pid}")

        self.slog.log_stop(pid, ws_port=proc.ws_port)
        with OperationTimer() as timer:
            try:
                await asyncio.to_thread(terminate_process, pid, self.stop_timeout)
            except ProcessError as e:
                self.slog.log_stop_failure(pid, "TERMINATE_FAILED", str(e))
                raise SupervisorError(str(e)) from e

            popen = self._popen.get(pid)
            if popen is not None:
                popen.poll()

        self._forget(pid)
        logger.info(f"Stopped daemon on ws_port {proc.ws_port} (PID {pid})")
        self.slog.log_stop_success(pid, elapsed_ms=timer.elapsed_ms())

    async def get_logs(self, pid: int, since: int = 0) -> List[str]:
        """
        Captured output of a daemon (last ``log_capacity`` lines)

        Args:
            pid: Daemon pid
            since: Skip this many of the returned lines

        Raises:
            DaemonNotFound: pid is not a supervised daemon
        """
        proc = self._processes.get(pid)
        if proc is None:
            raise DaemonNotFound(f"No daemon with pid {pid}")
        if not proc.log_file:
            return []
        lines = await asyncio.to_thread(self._tail, Path(proc.log_file), self.log_capacity)
        return lines[since:]

    @staticmethod
    def _tail(path: Path, count: int) -> List[str]:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return [line.rstrip("\n") for line in deque(f, maxlen=count)]
        except FileNotFoundError:
            return []

    async def stop_all(self) -> None:
        """Stop every supervised daemon; failures are logged"""
        for pid in list(self._processes):
            try:
                await self.stop_daemon(pid)
            except SupervisorError as e:
                logger.error(f"Failed to stop daemon PID {pid}: {e}")


__all__ = [
    "DaemonDescriptor",
    "DaemonProcess",
    "DaemonSupervisor",
    "port_from_multiaddr",
]
