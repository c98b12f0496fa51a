"""
Instance lifecycle: registry, config reconciliation, activity log
"""

from craftstudio.instances.activity import ActivityCategory, ActivityEvent, ActivityLevel, ActivityLog
from craftstudio.instances.reconciler import RESTART_REQUIRED_FIELDS, ReloadAction, classify
from craftstudio.instances.registry import (
    ConnectionStatus,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InstanceRegistry,
    RegistryError,
    RestartPhase,
    RestartResult,
)

__all__ = [
    "ActivityCategory",
    "ActivityEvent",
    "ActivityLevel",
    "ActivityLog",
    "ConnectionStatus",
    "DuplicateInstanceError",
    "InstanceNotFoundError",
    "InstanceRegistry",
    "RESTART_REQUIRED_FIELDS",
    "RegistryError",
    "ReloadAction",
    "RestartPhase",
    "RestartResult",
    "classify",
]
