"""Tests for global config schema migrations"""

from craftstudio.config.migrations import CURRENT_SCHEMA_VERSION, detect_version, migrate


def _v1_document():
    return {
        "solana": {"cluster": "devnet"},
        "instances": [
            {
                "id": "a1",
                "name": "Primary",
                "dataDir": "/data/a1",
                "ws_port": 9091,
                "capabilities": {"client": True, "storage": True, "aggregator": False},
            },
            {"id": "b2", "dataDir": "/data/b2"},
        ],
        "activeInstanceId": "a1",
    }


def test_missing_version_is_v1():
    assert detect_version({}) == 1


def test_invalid_version_is_v1():
    assert detect_version({"schemaVersion": "abc"}) == 1


def test_v1_embedded_records_become_refs():
    result = migrate(_v1_document())

    assert result.from_version == 1
    assert result.to_version == CURRENT_SCHEMA_VERSION
    assert result.changed
    assert result.document["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert result.document["instances"] == [
        {"id": "a1", "dataDir": "/data/a1"},
        {"id": "b2", "dataDir": "/data/b2"},
    ]
    assert len(result.embedded_instances) == 1
    assert result.embedded_instances[0]["name"] == "Primary"
    assert result.embedded_instances[0]["ws_port"] == 9091


def test_input_not_modified():
    document = _v1_document()
    migrate(document)
    assert "name" in document["instances"][0]
    assert "schemaVersion" not in document


def test_migration_is_idempotent():
    first = migrate(_v1_document())
    second = migrate(first.document)

    assert second.document == first.document
    assert second.embedded_instances == []
    assert not second.changed


def test_newer_version_is_not_downgraded():
    result = migrate({"schemaVersion": CURRENT_SCHEMA_VERSION + 3, "instances": []})
    assert result.document["schemaVersion"] == CURRENT_SCHEMA_VERSION + 3
    assert not result.changed


def test_embedded_records_at_current_version_are_lifted():
    document = _v1_document()
    document["schemaVersion"] = CURRENT_SCHEMA_VERSION

    result = migrate(document)

    assert result.from_version == CURRENT_SCHEMA_VERSION
    assert result.changed
    assert result.document["instances"] == [
        {"id": "a1", "dataDir": "/data/a1"},
        {"id": "b2", "dataDir": "/data/b2"},
    ]
    assert [record["name"] for record in result.embedded_instances] == ["Primary"]
