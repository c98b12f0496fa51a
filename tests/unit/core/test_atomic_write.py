"""Tests for atomic file writes"""

import json

from craftstudio.core.utils.atomic_write import atomic_write, atomic_write_json


def test_creates_parent_directories(tmp_path):
    target = tmp_path / "a" / "b" / "config.json"

    atomic_write_json(target, {"schemaVersion": 2})

    assert json.loads(target.read_text(encoding="utf-8")) == {"schemaVersion": 2}
    assert not target.with_suffix(".json.tmp").exists()


def test_replaces_existing_content(tmp_path):
    target = tmp_path / "notes.txt"
    atomic_write(target, "first")
    atomic_write(target, "second")

    assert target.read_text(encoding="utf-8") == "second"
