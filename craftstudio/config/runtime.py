"""
Daemon runtime configuration (``<dataDir>/config.json``)

The daemon reads this document on startup. CraftStudio writes the fields it
owns and keeps every other key (timing knobs, ``boot_peers``, fields added by
newer daemons) exactly as found.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from craftstudio.core.utils.atomic_write import atomic_write_json

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"
API_KEY_FILENAME = "api_key"
STUDIO_SECTION = "studio"

RUNTIME_SCHEMA_VERSION = 1
DEFAULT_DAEMON_LISTEN_PORT = 44001
DEFAULT_DAEMON_WS_PORT = 9091
DEFAULT_MAX_STORAGE_BYTES = 10_737_418_240  # 10 GiB


class RuntimeConfigError(Exception):
    """The runtime config file exists but cannot be parsed"""
    pass


@dataclass
class WorkerRuntimeConfig:
    """Typed view of a daemon's config.json with unknown keys kept in ``extra``"""
    schema_version: int = RUNTIME_SCHEMA_VERSION
    capabilities: List[str] = field(default_factory=lambda: ["client"])
    listen_port: int = DEFAULT_DAEMON_LISTEN_PORT
    ws_port: int = DEFAULT_DAEMON_WS_PORT
    socket_path: Optional[str] = None
    capability_announce_interval_secs: int = 300
    reannounce_interval_secs: int = 600
    reannounce_threshold_secs: int = 1200
    challenger_interval_secs: int = 120
    max_storage_bytes: int = DEFAULT_MAX_STORAGE_BYTES
    extra: Dict[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = (
        "schema_version",
        "capabilities",
        "listen_port",
        "ws_port",
        "socket_path",
        "capability_announce_interval_secs",
        "reannounce_interval_secs",
        "reannounce_threshold_secs",
        "challenger_interval_secs",
        "max_storage_bytes",
    )

    @property
    def studio(self) -> Optional[Dict[str, Any]]:
        section = self.extra.get(STUDIO_SECTION)
        return section if isinstance(section, dict) else None

    def copy(self) -> "WorkerRuntimeConfig":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {key: copy.deepcopy(getattr(self, key)) for key in self.KNOWN_KEYS}
        for key, value in self.extra.items():
            if key not in data:
                data[key] = copy.deepcopy(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerRuntimeConfig":
        """Back-fill missing known keys with defaults; keep the rest verbatim"""
        values = {key: copy.deepcopy(data[key]) for key in cls.KNOWN_KEYS if key in data}
        extra = {key: copy.deepcopy(value) for key, value in data.items() if key not in cls.KNOWN_KEYS}
        return cls(**values, extra=extra)


def data_dir_path(data_dir: Union[str, Path]) -> Path:
    return Path(data_dir).expanduser()


def runtime_config_path(data_dir: Union[str, Path]) -> Path:
    return data_dir_path(data_dir) / CONFIG_FILENAME


def read_runtime_config(data_dir: Union[str, Path]) -> Optional[WorkerRuntimeConfig]:
    """
    Read ``<data_dir>/config.json``

    Returns:
        The parsed document, or None when the file does not exist

    Raises:
        RuntimeConfigError: the file exists but is not a JSON object
    """
    path = runtime_config_path(data_dir)
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise RuntimeConfigError(f"Failed to read {path}: {e}") from e

    if not isinstance(raw, dict):
        raise RuntimeConfigError(f"{path} does not contain a JSON object")

    return WorkerRuntimeConfig.from_dict(raw)


def write_runtime_config(data_dir: Union[str, Path], config: WorkerRuntimeConfig) -> Path:
    """Atomically write ``<data_dir>/config.json``, creating the directory"""
    path = runtime_config_path(data_dir)
    atomic_write_json(path, config.to_dict())
    logger.debug(f"Wrote runtime config: {path}")
    return path


def read_api_key(data_dir: Union[str, Path]) -> Optional[str]:
    """API key the daemon generated in its data directory, if any"""
    path = data_dir_path(data_dir) / API_KEY_FILENAME
    try:
        key = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Failed to read API key {path}: {e}")
        return None
    return key or None
