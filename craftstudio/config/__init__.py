"""
Configuration documents: the global application config and per-daemon runtime configs
"""

from craftstudio.config.schema import (
    ApplicationConfig,
    Capabilities,
    InstanceConfig,
    InstanceRef,
)
from craftstudio.config.runtime import WorkerRuntimeConfig
from craftstudio.config.store import ConfigStore

__all__ = [
    "ApplicationConfig",
    "Capabilities",
    "ConfigStore",
    "InstanceConfig",
    "InstanceRef",
    "WorkerRuntimeConfig",
]
