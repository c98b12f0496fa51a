"""
New instance defaults

All paths of a new instance derive from its data directory; a missing data
directory is generated under the nodes directory from the id.
"""

from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

from craftstudio.config.schema import (
    DEFAULT_LISTEN_PORT,
    DEFAULT_WS_PORT,
    Capabilities,
    InstanceConfig,
    generate_id,
)


def allocate_ports(existing: Iterable[InstanceConfig]) -> Tuple[int, int]:
    """
    Next free (listen port, control port) pair

    The first instance gets the defaults; later ones go one above the
    highest port in use.
    """
    instances = list(existing)
    if not instances:
        return DEFAULT_LISTEN_PORT, DEFAULT_WS_PORT
    port = max(DEFAULT_LISTEN_PORT - 1, *(i.port for i in instances)) + 1
    ws_port = max(DEFAULT_WS_PORT - 1, *(i.ws_port for i in instances)) + 1
    return port, ws_port


def make_instance_config(
    name: str,
    nodes_dir: Union[str, Path] = "~/.datacraft/nodes",
    data_dir: Optional[str] = None,
    auto_start: bool = True,
    capabilities: Optional[Capabilities] = None,
    port: Optional[int] = None,
    ws_port: Optional[int] = None,
    existing: Iterable[InstanceConfig] = (),
) -> InstanceConfig:
    """
    Build a fresh InstanceConfig

    Args:
        name: Display name
        nodes_dir: Parent of generated data directories
        data_dir: Explicit data directory (generated from the id when omitted)
        auto_start: Start the daemon on add/load
        capabilities: Node roles (client only by default)
        port: Listen port; allocated from ``existing`` when omitted
        ws_port: Control port; allocated from ``existing`` when omitted
        existing: Instances already registered, used for port allocation
    """
    instance_id = generate_id()
    if data_dir is None:
        data_dir = f"{str(nodes_dir).rstrip('/')}/{instance_id[:8]}"

    free_port, free_ws_port = allocate_ports(existing)
    port = port or free_port
    ws_port = ws_port or free_ws_port

    return InstanceConfig(
        id=instance_id,
        name=name,
        data_dir=data_dir,
        auto_start=auto_start,
        url=f"ws://127.0.0.1:{ws_port}",
        port=port,
        ws_port=ws_port,
        keypair_path=f"{data_dir}/identity.json",
        capabilities=capabilities or Capabilities(),
        storage_path=f"{data_dir}/storage",
    )
