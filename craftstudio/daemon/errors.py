"""
Daemon error types

Control channel errors (connectivity) and supervisor errors (process
control). None of them is fatal to CraftStudio: callers log them and carry on.
"""

from typing import Any, Optional


class DaemonClientError(Exception):
    """Base class for control channel failures"""
    pass


class DaemonOffline(DaemonClientError):
    """No open control connection (never connected, dropped, or destroyed)"""
    pass


class RequestTimeout(DaemonClientError):
    """The daemon did not answer within the request timeout"""
    pass


class RpcError(DaemonClientError):
    """The daemon answered with a JSON-RPC error object"""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return f"RPC error {self.code}: {self.message}"


class SupervisorError(Exception):
    """Base class for daemon process control failures"""
    pass


class DaemonAlreadyRunning(SupervisorError):
    """A daemon already owns the requested control port"""

    def __init__(self, message: str, ws_port: Optional[int] = None):
        super().__init__(message)
        self.ws_port = ws_port


class DaemonNotFound(SupervisorError):
    """No supervised daemon with the given pid"""
    pass


class DaemonBinaryNotFound(SupervisorError):
    """The daemon executable could not be resolved"""
    pass
