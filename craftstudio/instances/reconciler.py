"""
Config Reconciler

Decides how an instance configuration edit reaches the daemon and merges
studio-level records into the daemon's on-disk runtime config.

Classification is a pure function of the patch's key set: touching any
field the daemon only reads at startup requires a restart, anything else is
hot-applied over the control channel.
"""

import copy
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

from craftstudio.config.runtime import (
    RUNTIME_SCHEMA_VERSION,
    STUDIO_SECTION,
    RuntimeConfigError,
    WorkerRuntimeConfig,
    read_runtime_config,
    write_runtime_config,
)
from craftstudio.config.schema import (
    INSTANCE_FIELD_ALIASES,
    Capabilities,
    InstanceConfig,
)
from craftstudio.daemon.supervisor import DaemonDescriptor

logger = logging.getLogger(__name__)

GIB = 1024 ** 3

# Fields the daemon reads only at startup
RESTART_REQUIRED_FIELDS = frozenset({"capabilities", "port", "ws_port", "socket_path"})

# Fields a running daemon accepts through set_config
HOT_RUNTIME_FIELDS = (
    "capability_announce_interval_secs",
    "reannounce_interval_secs",
    "reannounce_threshold_secs",
    "challenger_interval_secs",
)

IMMUTABLE_FIELDS = frozenset({"id", "data_dir"})


class ReloadAction(str, Enum):
    HOT_RELOAD = "hot_reload"
    RESTART = "restart"


def gb_to_bytes(gb: float) -> int:
    return int(round(float(gb) * GIB))


def bytes_to_gb(num_bytes: int) -> float:
    gb = num_bytes / GIB
    return int(gb) if float(gb).is_integer() else gb


def normalize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map serialized/camelCase keys to InstanceConfig attribute names

    ``max_storage_bytes`` is accepted and converted to ``max_storage_gb``.
    Unrecognized keys are passed through unchanged.
    """
    normalized: Dict[str, Any] = {}
    for key, value in patch.items():
        if key == "max_storage_bytes":
            normalized["max_storage_gb"] = bytes_to_gb(int(value))
        else:
            normalized[INSTANCE_FIELD_ALIASES.get(key, key)] = value
    return normalized


def classify(patch: Dict[str, Any]) -> ReloadAction:
    """RESTART iff the patch touches a restart-required field"""
    if RESTART_REQUIRED_FIELDS.intersection(normalize_patch(patch)):
        return ReloadAction.RESTART
    return ReloadAction.HOT_RELOAD


def apply_patch(instance: InstanceConfig, patch: Dict[str, Any]) -> InstanceConfig:
    """
    Return a copy of ``instance`` with ``patch`` applied

    ``id`` and ``data_dir`` are never changed. A capabilities value replaces
    the whole flag set. Unknown keys land in ``extra``.
    """
    result = instance.copy()
    for attr, value in normalize_patch(patch).items():
        if attr in IMMUTABLE_FIELDS:
            if value != getattr(instance, attr):
                logger.warning(f"[{instance.id}] Ignoring attempt to change {attr}")
            continue
        if attr == "capabilities":
            result.capabilities = Capabilities.from_value(value)
        elif attr == "extra":
            result.extra.update(copy.deepcopy(value or {}))
        elif hasattr(result, attr):
            setattr(result, attr, copy.deepcopy(value))
        else:
            result.extra[attr] = copy.deepcopy(value)
    return result


def runtime_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """Project an instance patch onto the worker-level fields a live daemon accepts"""
    normalized = normalize_patch(patch)
    projected: Dict[str, Any] = {}
    for key in HOT_RUNTIME_FIELDS:
        if normalized.get(key) is not None:
            projected[key] = normalized[key]
    if normalized.get("max_storage_gb") is not None:
        projected["max_storage_bytes"] = gb_to_bytes(normalized["max_storage_gb"])
    return projected


def merge_runtime_config(
    existing: Optional[WorkerRuntimeConfig],
    instance: InstanceConfig,
) -> WorkerRuntimeConfig:
    """
    Overlay the authoritative fields of ``instance`` on an existing runtime config

    Fields the studio does not own (``boot_peers``, fields of newer daemons)
    are carried through unchanged. Merging the same instance twice yields the
    same document.
    """
    merged = existing.copy() if existing is not None else WorkerRuntimeConfig()
    merged.schema_version = max(merged.schema_version, RUNTIME_SCHEMA_VERSION)
    merged.capabilities = instance.capabilities.to_list()
    merged.listen_port = instance.port
    merged.ws_port = instance.ws_port
    if instance.socket_path:
        merged.socket_path = instance.socket_path
    merged.max_storage_bytes = gb_to_bytes(instance.max_storage_gb)
    for key in HOT_RUNTIME_FIELDS:
        value = getattr(instance, key)
        if value is not None:
            setattr(merged, key, value)
    merged.extra[STUDIO_SECTION] = instance.to_dict()
    return merged


def overlay_runtime(instance: InstanceConfig, runtime: WorkerRuntimeConfig) -> InstanceConfig:
    """Copy of ``instance`` with the worker-level fields taken from ``runtime``"""
    result = instance.copy()
    result.capabilities = Capabilities.from_list(runtime.capabilities)
    result.port = runtime.listen_port
    result.ws_port = runtime.ws_port
    result.url = f"ws://127.0.0.1:{runtime.ws_port}"
    if runtime.socket_path:
        result.socket_path = runtime.socket_path
    result.max_storage_gb = bytes_to_gb(runtime.max_storage_bytes)
    for key in HOT_RUNTIME_FIELDS:
        setattr(result, key, getattr(runtime, key))
    return result


def instance_from_runtime(
    runtime: WorkerRuntimeConfig,
    data_dir: str,
    base: Optional[InstanceConfig] = None,
) -> InstanceConfig:
    """
    Rebuild an InstanceConfig from a runtime config

    The ``studio`` section is authoritative when present. A config written by
    the daemon alone is translated from its worker fields on top of ``base``
    (or of a blank record named after the data directory).
    """
    studio = runtime.studio
    if studio is not None:
        instance = InstanceConfig.from_dict(studio)
    else:
        if base is None:
            base = InstanceConfig(id="", name=Path(data_dir).name, data_dir=data_dir)
        instance = overlay_runtime(base, runtime)
    instance.data_dir = data_dir
    return instance


def read_instance_config(data_dir: Union[str, Path]) -> Optional[InstanceConfig]:
    """
    Read the instance record stored under ``data_dir``

    Returns:
        The record, or None when no config file exists

    Raises:
        RuntimeConfigError: the file exists but is unreadable
    """
    runtime = read_runtime_config(data_dir)
    if runtime is None:
        return None
    return instance_from_runtime(runtime, str(data_dir))


def write_instance_config(data_dir: Union[str, Path], instance: InstanceConfig) -> WorkerRuntimeConfig:
    """
    Merge ``instance`` into ``<data_dir>/config.json`` and write it atomically

    An unreadable existing file is replaced by defaults plus the instance.
    """
    try:
        existing = read_runtime_config(data_dir)
    except RuntimeConfigError as e:
        logger.warning(f"[{instance.id}] {e}; rewriting from defaults")
        existing = None
    merged = merge_runtime_config(existing, instance)
    write_runtime_config(data_dir, merged)
    return merged


def build_descriptor(
    runtime: WorkerRuntimeConfig,
    data_dir: str,
    binary_path: Optional[str] = None,
) -> DaemonDescriptor:
    """Launch descriptor for a daemon whose config.json is ``runtime``"""
    return DaemonDescriptor(
        data_dir=data_dir,
        socket_path=runtime.socket_path,
        ws_port=runtime.ws_port,
        listen_addr=f"/ip4/0.0.0.0/tcp/{runtime.listen_port}",
        binary_path=binary_path,
        capabilities=list(runtime.capabilities) or ["client"],
    )
