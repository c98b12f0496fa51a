"""Tests for the application config store"""

import json

import pytest

from craftstudio.config.store import ConfigStore


def _read(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class TestLoad:

    def test_missing_file_writes_defaults(self, tmp_path):
        config_file = tmp_path / "config.json"
        store = ConfigStore(config_file)

        config = store.load()

        assert config.instances == []
        assert config.active_instance_id is None
        assert store.loaded
        assert _read(config_file)["schemaVersion"] == 2
        assert _read(config_file)["solana"]["cluster"] == "devnet"

    def test_corrupt_file_uses_defaults_without_overwriting(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("{ not json", encoding="utf-8")
        store = ConfigStore(config_file)

        config = store.load()

        assert config.instances == []
        assert config_file.read_text(encoding="utf-8") == "{ not json"

    def test_non_object_document_uses_defaults(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("[1, 2]", encoding="utf-8")

        config = ConfigStore(config_file).load()

        assert config.instances == []

    def test_v1_document_migrated_and_rewritten(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "instances": [
                {"id": "a1", "name": "Primary", "dataDir": "/data/a1", "ws_port": 9095},
            ],
            "activeInstanceId": "a1",
            "customKey": 7,
        }), encoding="utf-8")
        store = ConfigStore(config_file)

        config = store.load()

        assert config.instance_ids() == ["a1"]
        assert store.legacy_instance_ids == ["a1"]
        on_disk = _read(config_file)
        assert on_disk["schemaVersion"] == 2
        assert on_disk["instances"] == [
            {"id": "a1", "name": "Primary", "dataDir": "/data/a1", "ws_port": 9095},
        ]
        assert on_disk["customKey"] == 7

        legacy = store.pop_legacy_instance("a1")
        assert legacy.name == "Primary"
        assert legacy.ws_port == 9095
        assert store.pop_legacy_instance("a1") is None

        store.release_legacy_instance("a1")

        assert store.unmigrated_instance_ids == []
        assert _read(config_file)["instances"] == [{"id": "a1", "dataDir": "/data/a1"}]

    def test_unreleased_record_survives_other_writes(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "instances": [{"id": "a1", "name": "Primary", "dataDir": "/data/a1"}],
        }), encoding="utf-8")
        store = ConfigStore(config_file)
        store.load()
        store.pop_legacy_instance("a1")

        store.update({"ui": {"theme": "light"}})

        on_disk = _read(config_file)
        assert on_disk["ui"]["theme"] == "light"
        assert on_disk["instances"] == [{"id": "a1", "name": "Primary", "dataDir": "/data/a1"}]

    def test_embedded_record_in_current_schema_is_lifted_again(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "schemaVersion": 2,
            "instances": [{"id": "a1", "name": "Primary", "dataDir": "/data/a1"}],
            "activeInstanceId": "a1",
        }), encoding="utf-8")
        store = ConfigStore(config_file)

        config = store.load()

        assert config.instance_ids() == ["a1"]
        assert store.legacy_instance_ids == ["a1"]
        assert store.pop_legacy_instance("a1").name == "Primary"

    @pytest.mark.asyncio
    async def test_load_inside_loop_does_not_block(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        store = ConfigStore(config_file)

        def _blocking_write(snapshot):
            pytest.fail("load wrote synchronously inside the event loop")

        monkeypatch.setattr(store, "_save_now", _blocking_write)

        store.load()

        assert store.tasks.pending == 1
        assert not config_file.exists()
        await store.tasks.drain()
        assert _read(config_file)["schemaVersion"] == 2

    def test_stale_active_id_fixed_on_load(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "schemaVersion": 2,
            "instances": [{"id": "a1", "dataDir": "/a"}],
            "activeInstanceId": "zz",
        }), encoding="utf-8")

        config = ConfigStore(config_file).load()

        assert config.active_instance_id == "a1"
        assert _read(config_file)["activeInstanceId"] == "a1"


class TestUpdate:

    def test_update_without_loop_writes_synchronously(self, tmp_path):
        config_file = tmp_path / "config.json"
        store = ConfigStore(config_file)
        store.load()

        task = store.update({"ui": {"theme": "light"}})

        assert task is None
        assert store.config.ui.theme == "light"
        assert _read(config_file)["ui"]["theme"] == "light"
        assert _read(config_file)["ui"]["notifications"] is True

    @pytest.mark.asyncio
    async def test_update_in_loop_returns_task(self, tmp_path):
        config_file = tmp_path / "config.json"
        store = ConfigStore(config_file)
        store.load()

        task = store.update({"instances": [{"id": "a1", "dataDir": "/a"}], "activeInstanceId": "a1"})
        assert task is not None
        await task

        on_disk = _read(config_file)
        assert on_disk["instances"] == [{"id": "a1", "dataDir": "/a"}]
        assert on_disk["activeInstanceId"] == "a1"

    @pytest.mark.asyncio
    async def test_writes_land_in_order(self, tmp_path):
        config_file = tmp_path / "config.json"
        store = ConfigStore(config_file)
        store.load()

        for theme in ("a", "b", "c", "d"):
            store.update({"ui": {"theme": theme}})
        await store.tasks.drain()

        assert _read(config_file)["ui"]["theme"] == "d"

    @pytest.mark.asyncio
    async def test_failed_write_keeps_memory_state(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        store = ConfigStore(config_file)
        store.load()
        await store.tasks.drain()

        def _boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("craftstudio.config.store.atomic_write_json", _boom)

        await store.update({"ui": {"theme": "light"}})

        assert store.config.ui.theme == "light"
        assert _read(config_file)["ui"]["theme"] == "dark"

    def test_update_section_rejects_unknown(self, tmp_path):
        store = ConfigStore(tmp_path / "config.json")
        store.load()
        with pytest.raises(ValueError):
            store.update_section("instances", {})

    def test_update_section_solana(self, tmp_path):
        store = ConfigStore(tmp_path / "config.json")
        store.load()
        store.update_section("solana", {"customRpcUrl": "http://rpc.local"})
        assert store.config.solana.custom_rpc_url == "http://rpc.local"
        assert store.config.solana.cluster == "devnet"

    def test_reset(self, tmp_path):
        config_file = tmp_path / "config.json"
        store = ConfigStore(config_file)
        store.load()
        store.update({"ui": {"theme": "light"}, "instances": [{"id": "a", "dataDir": "/a"}]})

        store.reset()

        assert store.config.instances == []
        assert store.config.ui.theme == "dark"
        assert _read(config_file)["instances"] == []
