"""
Daemon side of CraftStudio: process supervision and the control channel
"""

from craftstudio.daemon.client import DaemonClient
from craftstudio.daemon.errors import (
    DaemonAlreadyRunning,
    DaemonBinaryNotFound,
    DaemonClientError,
    DaemonNotFound,
    DaemonOffline,
    RequestTimeout,
    RpcError,
    SupervisorError,
)
from craftstudio.daemon.supervisor import DaemonDescriptor, DaemonProcess, DaemonSupervisor

__all__ = [
    "DaemonAlreadyRunning",
    "DaemonBinaryNotFound",
    "DaemonClient",
    "DaemonClientError",
    "DaemonDescriptor",
    "DaemonNotFound",
    "DaemonOffline",
    "DaemonProcess",
    "DaemonSupervisor",
    "RequestTimeout",
    "RpcError",
    "SupervisorError",
]
