"""Tests for new instance defaults"""

from craftstudio.config.schema import Capabilities
from craftstudio.instances.defaults import allocate_ports, make_instance_config


def test_first_instance_gets_default_ports():
    assert allocate_ports([]) == (4001, 9091)


def test_ports_follow_highest_in_use():
    first = make_instance_config("one", nodes_dir="/nodes")
    second = make_instance_config("two", nodes_dir="/nodes", existing=[first])
    third = make_instance_config("three", nodes_dir="/nodes", existing=[first, second])

    assert (second.port, second.ws_port) == (4002, 9092)
    assert (third.port, third.ws_port) == (4003, 9093)


def test_paths_derive_from_data_dir():
    instance = make_instance_config("Node", nodes_dir="/nodes/")

    assert instance.data_dir == f"/nodes/{instance.id[:8]}"
    assert instance.keypair_path == f"{instance.data_dir}/identity.json"
    assert instance.storage_path == f"{instance.data_dir}/storage"
    assert instance.url == "ws://127.0.0.1:9091"
    assert instance.auto_start is True
    assert instance.capabilities.to_list() == ["client"]


def test_explicit_values_win():
    instance = make_instance_config(
        "Storage",
        data_dir="/srv/storage",
        auto_start=False,
        capabilities=Capabilities(client=True, storage=True),
        port=5000,
        ws_port=9500,
    )

    assert instance.data_dir == "/srv/storage"
    assert instance.auto_start is False
    assert instance.capabilities.to_list() == ["client", "storage"]
    assert (instance.port, instance.ws_port) == (5000, 9500)
    assert instance.url == "ws://127.0.0.1:9500"


def test_ids_are_unique():
    assert make_instance_config("a").id != make_instance_config("a").id
