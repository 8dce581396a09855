from __future__ import annotations

import json

import pytest

from mailgate.store import JsonDocument, Store, StoreError


def test_store_lays_out_state_documents(tmp_path):
    store = Store(tmp_path / "root")

    assert store.whitelist.path == tmp_path / "root" / "state" / "whitelist.json"
    assert store.subjects.path == tmp_path / "root" / "state" / "subjects.json"
    assert store.state_dir.is_dir()


def test_write_then_read_roundtrip(tmp_path):
    document = JsonDocument(tmp_path / "doc.json")

    document.write({"b": 1, "a": [1, 2]})

    assert document.read() == {"a": [1, 2], "b": 1}
    assert document.exists()
    assert document.modified_at() is not None
    assert not list(tmp_path.glob(".doc.json.*.tmp"))


def test_read_returns_none_for_missing_file(tmp_path):
    document = JsonDocument(tmp_path / "missing.json")

    assert document.read() is None
    assert document.modified_at() is None


def test_corrupt_document_is_quarantined(tmp_path):
    path = tmp_path / "doc.json"
    path.write_text("{not json", encoding="utf-8")
    (tmp_path / "doc.json.corrupt").write_text("older", encoding="utf-8")

    assert JsonDocument(path).read() is None

    assert not path.exists()
    assert (tmp_path / "doc.json.corrupt2").read_text(encoding="utf-8") == "{not json"


def test_write_failure_raises_store_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    document = JsonDocument(blocker / "doc.json")

    with pytest.raises(StoreError):
        document.write({"a": 1})


def test_written_json_is_sorted_and_indented(tmp_path):
    document = JsonDocument(tmp_path / "doc.json")

    document.write({"z": 1, "a": 2})

    text = document.path.read_text(encoding="utf-8")
    assert text.index('"a"') < text.index('"z"')
    assert json.loads(text) == {"a": 2, "z": 1}
