"""
CraftStudio configuration schema

Typed records for the global application document (``~/.craftstudio/config.json``)
and for per-instance studio configuration.

Every record keeps the keys it does not understand in ``extra`` and writes them
back unchanged, so documents written by newer versions survive a round trip
through older ones.

Serialized keys follow the desktop app's JSON layout (camelCase for studio
fields, snake_case for fields shared with the daemon such as ``ws_port``).
"""

import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CAPABILITY_NAMES = ("client", "storage", "aggregator")
BASELINE_CAPABILITY = "client"

DEFAULT_LISTEN_PORT = 4001
DEFAULT_WS_PORT = 9091
DEFAULT_MAX_STORAGE_GB = 50


def generate_id() -> str:
    """Opaque, globally unique instance id"""
    return uuid.uuid4().hex


@dataclass
class Capabilities:
    """Node roles advertised by a daemon"""
    client: bool = True
    storage: bool = False
    aggregator: bool = False

    def to_list(self) -> List[str]:
        """Capability names passed to the daemon; never empty"""
        names = [name for name in CAPABILITY_NAMES if getattr(self, name)]
        return names or [BASELINE_CAPABILITY]

    @classmethod
    def from_list(cls, names: List[str]) -> "Capabilities":
        lowered = {str(n).lower() for n in names or []}
        return cls(**{name: name in lowered for name in CAPABILITY_NAMES})

    def to_dict(self) -> Dict[str, bool]:
        return {name: getattr(self, name) for name in CAPABILITY_NAMES}

    @classmethod
    def from_value(cls, value: Any) -> "Capabilities":
        """Accept a Capabilities, a flag dict, or a list of names"""
        if isinstance(value, Capabilities):
            return copy.copy(value)
        if isinstance(value, dict):
            return cls(**{name: bool(value.get(name, False)) for name in CAPABILITY_NAMES})
        if isinstance(value, (list, tuple, set)):
            return cls.from_list(list(value))
        raise TypeError(f"Unsupported capabilities value: {value!r}")


# python attribute -> serialized key
INSTANCE_FIELD_KEYS: Dict[str, str] = {
    "id": "id",
    "name": "name",
    "data_dir": "dataDir",
    "auto_start": "autoStart",
    "url": "url",
    "port": "port",
    "ws_port": "ws_port",
    "socket_path": "socket_path",
    "keypair_path": "keypairPath",
    "capabilities": "capabilities",
    "storage_path": "storagePath",
    "max_storage_gb": "maxStorageGB",
    "bandwidth_limit_mbps": "bandwidthLimitMbps",
    "capability_announce_interval_secs": "capability_announce_interval_secs",
    "reannounce_interval_secs": "reannounce_interval_secs",
    "reannounce_threshold_secs": "reannounce_threshold_secs",
    "challenger_interval_secs": "challenger_interval_secs",
}

# serialized key (and a few UI spellings) -> python attribute
INSTANCE_FIELD_ALIASES: Dict[str, str] = {
    **{key: attr for attr, key in INSTANCE_FIELD_KEYS.items()},
    **{attr: attr for attr in INSTANCE_FIELD_KEYS},
    "wsPort": "ws_port",
    "socketPath": "socket_path",
    "maxStorageGb": "max_storage_gb",
}

OPTIONAL_INSTANCE_FIELDS = (
    "socket_path",
    "bandwidth_limit_mbps",
    "capability_announce_interval_secs",
    "reannounce_interval_secs",
    "reannounce_threshold_secs",
    "challenger_interval_secs",
)


@dataclass
class InstanceConfig:
    """Per-instance configuration: one record per supervised daemon"""
    id: str
    name: str
    data_dir: str
    auto_start: bool = True
    url: str = f"ws://127.0.0.1:{DEFAULT_WS_PORT}"
    port: int = DEFAULT_LISTEN_PORT  # libp2p listen port
    ws_port: int = DEFAULT_WS_PORT  # control channel port
    socket_path: Optional[str] = None
    keypair_path: str = ""
    capabilities: Capabilities = field(default_factory=Capabilities)
    storage_path: str = ""
    max_storage_gb: float = DEFAULT_MAX_STORAGE_GB
    bandwidth_limit_mbps: Optional[float] = None
    capability_announce_interval_secs: Optional[int] = None
    reannounce_interval_secs: Optional[int] = None
    reannounce_threshold_secs: Optional[int] = None
    challenger_interval_secs: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def ref(self) -> "InstanceRef":
        return InstanceRef(id=self.id, data_dir=self.data_dir)

    def copy(self) -> "InstanceConfig":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = copy.deepcopy(self.extra)
        for attr, key in INSTANCE_FIELD_KEYS.items():
            value = getattr(self, attr)
            if value is None and attr in OPTIONAL_INSTANCE_FIELDS:
                data.pop(key, None)
                continue
            if attr == "capabilities":
                value = value.to_dict()
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceConfig":
        """
        Build a record from its serialized form

        Missing fields are back-filled from defaults; unrecognized keys are kept
        in ``extra``.
        """
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            attr = INSTANCE_FIELD_ALIASES.get(key)
            if attr is None:
                extra[key] = copy.deepcopy(value)
            else:
                values[attr] = value

        if "capabilities" in values:
            values["capabilities"] = Capabilities.from_value(values["capabilities"])
        values.setdefault("id", "")
        values.setdefault("name", "")
        values.setdefault("data_dir", "")
        return cls(**values, extra=extra)


@dataclass
class InstanceRef:
    """Reference-only form of an instance in the global document"""
    id: str
    data_dir: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "dataDir": self.data_dir}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceRef":
        return cls(
            id=str(data.get("id", "")),
            data_dir=str(data.get("dataDir", data.get("data_dir", ""))),
        )


class _Section:
    """Mixin for flat settings sections with preserved unknown keys"""

    KEYS: Dict[str, str] = {}

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.extra)
        for attr, key in self.KEYS.items():
            value = getattr(self, attr)
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        by_key = {key: attr for attr, key in cls.KEYS.items()}
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key in by_key:
                values[by_key[key]] = value
            else:
                extra[key] = copy.deepcopy(value)
        return cls(**values, extra=extra)


@dataclass
class SolanaSettings(_Section):
    """Global settlement network settings shared by all instances"""
    cluster: str = "devnet"
    custom_rpc_url: Optional[str] = None
    usdc_mint_override: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    KEYS = {
        "cluster": "cluster",
        "custom_rpc_url": "customRpcUrl",
        "usdc_mint_override": "usdcMintOverride",
    }


@dataclass
class UiSettings(_Section):
    """UI preferences"""
    theme: str = "dark"
    notifications: bool = True
    start_minimized: bool = False
    launch_on_startup: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    KEYS = {
        "theme": "theme",
        "notifications": "notifications",
        "start_minimized": "startMinimized",
        "launch_on_startup": "launchOnStartup",
    }


APP_KEYS = ("schemaVersion", "solana", "instances", "activeInstanceId", "ui")


@dataclass
class ApplicationConfig:
    """The single global CraftStudio document"""
    schema_version: int
    solana: SolanaSettings = field(default_factory=SolanaSettings)
    instances: List[InstanceRef] = field(default_factory=list)
    active_instance_id: Optional[str] = None
    ui: UiSettings = field(default_factory=UiSettings)
    extra: Dict[str, Any] = field(default_factory=dict)

    def instance_ids(self) -> List[str]:
        return [ref.id for ref in self.instances]

    def ensure_active_instance(self) -> bool:
        """
        Enforce the active-instance invariant

        A stale or absent active id falls back to the first instance, or to
        none when there are no instances.

        Returns:
            True if the active id was changed
        """
        ids = self.instance_ids()
        if self.active_instance_id in ids:
            return False
        fallback = ids[0] if ids else None
        changed = fallback != self.active_instance_id
        self.active_instance_id = fallback
        return changed

    def copy(self) -> "ApplicationConfig":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.extra)
        data.update({
            "schemaVersion": self.schema_version,
            "solana": self.solana.to_dict(),
            "instances": [ref.to_dict() for ref in self.instances],
            "activeInstanceId": self.active_instance_id,
            "ui": self.ui.to_dict(),
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], schema_version: int) -> "ApplicationConfig":
        """
        Build the document from an already-migrated dict

        Missing sections and keys are back-filled from defaults.
        """
        instances = []
        for entry in data.get("instances") or []:
            if isinstance(entry, InstanceRef):
                instances.append(copy.copy(entry))
            elif isinstance(entry, dict):
                instances.append(InstanceRef.from_dict(entry))
            else:
                logger.warning(f"Ignoring malformed instance entry: {entry!r}")

        return cls(
            schema_version=int(data.get("schemaVersion", schema_version)),
            solana=SolanaSettings.from_dict(data.get("solana")),
            instances=instances,
            active_instance_id=data.get("activeInstanceId"),
            ui=UiSettings.from_dict(data.get("ui")),
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in APP_KEYS},
        )


def merge_application_config(base: ApplicationConfig, patch: Dict[str, Any]) -> ApplicationConfig:
    """
    Merge a partial document into ``base`` and return the result

    Dict sections (``solana``, ``ui``) are shallow-merged, the ``instances``
    list is replaced wholesale, scalars replace. The schema version never
    goes down.
    """
    result = base.copy()

    for key, value in patch.items():
        if key == "solana":
            result.solana = SolanaSettings.from_dict({**base.solana.to_dict(), **(value or {})})
        elif key == "ui":
            result.ui = UiSettings.from_dict({**base.ui.to_dict(), **(value or {})})
        elif key == "instances":
            result.instances = ApplicationConfig.from_dict(
                {"instances": value}, base.schema_version
            ).instances
        elif key == "activeInstanceId":
            result.active_instance_id = value
        elif key == "schemaVersion":
            result.schema_version = max(base.schema_version, int(value))
        else:
            result.extra[key] = copy.deepcopy(value)

    return result
