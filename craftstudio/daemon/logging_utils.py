"""
Daemon Structured Logging Utilities

Structured key=value records for daemon process operations (start, stop,
restart) with timing, pid, ports and error codes.

- Log file: <home>/logs/daemons.log (when a log directory is given)
- Records also propagate to the application's normal logging handlers
"""

import logging
import platform
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class DaemonStructuredLogger:
    """
    Structured logger for daemon operations

    Features:
    - Key=value entries that are easy to grep
    - Optional dedicated log file for daemon lifecycle events
    - Context fields (instance, ws_port, pid) on every entry
    """

    def __init__(self, logger_name: str = "craftstudio.daemons", log_dir: Optional[Path] = None):
        """
        Initialize structured logger

        Args:
            logger_name: Logger name (default: "craftstudio.daemons")
            log_dir: Directory for daemons.log; no file handler when None
        """
        self.logger = logging.getLogger(logger_name)
        self.log_file: Optional[Path] = None
        if log_dir is not None:
            self._ensure_log_file(Path(log_dir).expanduser())

    def _ensure_log_file(self, log_dir: Path):
        """Attach a daemons.log file handler once per path"""
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "daemons.log"
        self.log_file = log_file

        has_file_handler = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == str(log_file)
            for h in self.logger.handlers
        )
        if has_file_handler:
            return

        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        file_handler.setLevel(logging.DEBUG)
        self.logger.addHandler(file_handler)

    @staticmethod
    def format_fields(**fields: Any) -> str:
        """Render fields as ``key=value`` pairs, quoting strings with spaces"""
        parts = []
        for key, value in fields.items():
            if value is None:
                continue
            if isinstance(value, float):
                value = round(value, 2)
            if isinstance(value, str) and " " in value:
                parts.append(f'{key}="{value}"')
            else:
                parts.append(f"{key}={value}")
        return " ".join(parts)

    def log_operation(
        self,
        level: int,
        action: str,
        instance: Optional[str] = None,
        pid: Optional[int] = None,
        ws_port: Optional[int] = None,
        elapsed_ms: Optional[float] = None,
        error_code: Optional[str] = None,
        message: Optional[str] = None,
        **extra_fields,
    ):
        """
        Log a daemon operation with structured data

        Args:
            level: Logging level (logging.INFO, logging.ERROR, etc.)
            action: Action performed (start, stop, restart, recover)
            instance: Instance id or data directory
            pid: Process ID
            ws_port: Control channel port
            elapsed_ms: Duration in milliseconds
            error_code: Error code if the operation failed
            message: Additional message
            **extra_fields: Additional fields
        """
        self.logger.log(level, self.format_fields(
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            platform=platform.system().lower(),
            instance=instance,
            pid=pid,
            ws_port=ws_port,
            elapsed_ms=elapsed_ms,
            error_code=error_code,
            message=message,
            **extra_fields,
        ))

    def log_start(self, ws_port: int, data_dir: str, command: str, **extra):
        self.log_operation(
            logging.INFO, "start", instance=data_dir, ws_port=ws_port,
            message="Starting daemon", command=command, **extra,
        )

    def log_start_success(self, ws_port: int, pid: int, elapsed_ms: Optional[float] = None, **extra):
        self.log_operation(
            logging.INFO, "start", pid=pid, ws_port=ws_port, elapsed_ms=elapsed_ms,
            message="Daemon started", **extra,
        )

    def log_start_failure(self, ws_port: Optional[int], error_code: str, message: str, **extra):
        self.log_operation(
            logging.ERROR, "start", ws_port=ws_port, error_code=error_code,
            message=message, **extra,
        )

    def log_stop(self, pid: int, ws_port: Optional[int] = None, **extra):
        self.log_operation(logging.INFO, "stop", pid=pid, ws_port=ws_port, message="Stopping daemon", **extra)

    def log_stop_success(self, pid: int, elapsed_ms: Optional[float] = None, **extra):
        self.log_operation(logging.INFO, "stop", pid=pid, elapsed_ms=elapsed_ms, message="Daemon stopped", **extra)

    def log_stop_failure(self, pid: int, error_code: str, message: str, **extra):
        self.log_operation(logging.ERROR, "stop", pid=pid, error_code=error_code, message=message, **extra)

    def log_restart(self, instance: str, ws_port: int, **extra):
        self.log_operation(
            logging.INFO, "restart", instance=instance, ws_port=ws_port,
            message="Restarting daemon", **extra,
        )

    def log_restart_result(
        self,
        instance: str,
        ok: bool,
        elapsed_ms: Optional[float] = None,
        errors: Optional[list] = None,
        **extra,
    ):
        self.log_operation(
            logging.INFO if ok else logging.WARNING,
            "restart",
            instance=instance,
            elapsed_ms=elapsed_ms,
            error_code=None if ok else "RESTART_INCOMPLETE",
            message="Daemon restarted" if ok else f"Restart finished with errors: {'; '.join(errors or [])}",
            **extra,
        )


class OperationTimer:
    """
    Context manager for timing operations

    Usage:
        with OperationTimer() as timer:
            # perform operation
            pass

        elapsed_ms = timer.elapsed_ms()
    """

    def __init__(self):
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        return False

    def elapsed_ms(self) -> float:
        """Get elapsed time in milliseconds"""
        if self.start_time is None:
            return 0.0

        end = self.end_time if self.end_time is not None else time.perf_counter()
        return (end - self.start_time) * 1000.0


# Global logger instance
_daemon_logger: Optional[DaemonStructuredLogger] = None


def get_daemon_logger(log_dir: Optional[Path] = None) -> DaemonStructuredLogger:
    """Get the global daemon structured logger instance"""
    global _daemon_logger
    if _daemon_logger is None:
        _daemon_logger = DaemonStructuredLogger(log_dir=log_dir)
    elif log_dir is not None and _daemon_logger.log_file is None:
        _daemon_logger._ensure_log_file(Path(log_dir).expanduser())
    return _daemon_logger
