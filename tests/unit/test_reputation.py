from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from mailgate.reputation import ReputationEntry, ReputationStore
from mailgate.store import JsonDocument
from mailgate.types import Direction

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_mark_activity_folds_case_and_counts():
    store = ReputationStore()

    store.mark_activity(Direction.SENT, "Bob@Example.com", T0, 100)
    store.mark_activity(Direction.SENT, "bob@example.com", T0 - timedelta(days=1), 50)
    store.mark_activity(Direction.INBOX, "BOB@EXAMPLE.COM", T0 + timedelta(days=2), 10)

    entry = store.lookup("bob@example.com")
    assert entry == ReputationEntry(
        sent_count=2,
        inbox_count=1,
        sent_date=T0,
        inbox_date=T0 + timedelta(days=2),
        sent_bytes=150,
        inbox_bytes=10,
    )
    assert len(store) == 1
    assert "BOB@example.com" in store


def test_bytes_stay_absent_without_sizes():
    store = ReputationStore()

    store.mark_activity("inbox", "alice@example.com", T0)

    entry = store.lookup("alice@example.com")
    assert entry.inbox_bytes is None
    assert entry.sent_bytes is None
    assert entry.sent_count == 0


def test_mailer_daemon_is_never_recorded():
    store = ReputationStore()

    store.mark_activity(Direction.INBOX, "MAILER-DAEMON@googlemail.com", T0, 10)
    store.mark_activity(Direction.INBOX, "", T0, 10)

    assert len(store) == 0


def test_non_string_address_is_rejected():
    store = ReputationStore()

    with pytest.raises(TypeError):
        store.mark_activity(Direction.SENT, None)  # type: ignore[arg-type]


def test_lookup_of_unknown_or_empty_address():
    store = ReputationStore()

    assert store.lookup("nobody@example.com") is None
    assert store.lookup("") is None
    assert store.lookup(None) is None


def test_serialize_roundtrip_restores_datetimes(tmp_path):
    store = ReputationStore()
    store.mark_activity(Direction.SENT, "bob@example.com", T0, 100)
    store.mark_activity(Direction.INBOX, "carol@example.com", T0, None)
    document = JsonDocument(tmp_path / "whitelist.json")

    store.persist(document)
    restored = ReputationStore.load(document)

    assert restored is not None
    entry = restored.lookup("bob@example.com")
    assert isinstance(entry.sent_date, datetime)
    assert entry.sent_date == T0
    assert restored.serialize() == store.serialize()
    payload = document.read()
    assert payload["addresses"]["bob@example.com"]["sentCount"] == 1
    assert "inboxBytes" not in payload["addresses"]["carol@example.com"]


def test_load_missing_document_returns_none(tmp_path):
    assert ReputationStore.load(JsonDocument(tmp_path / "missing.json")) is None


def test_deserialize_requires_addresses_mapping():
    with pytest.raises(ValueError):
        ReputationStore.deserialize({"people": {}})


def test_deserialize_accepts_naive_and_zulu_dates():
    store = ReputationStore.deserialize(
        {
            "addresses": {
                "A@Example.com": {"inboxCount": 2, "inboxDate": "2024-03-01T12:00:00Z"},
                "b@example.com": {"sentCount": 1, "sentDate": "2024-03-01T12:00:00"},
            }
        }
    )

    assert store.lookup("a@example.com").inbox_date == T0
    assert store.lookup("b@example.com").sent_date == T0


def test_rows_sorted_by_inbox_bytes_descending():
    store = ReputationStore()
    store.mark_activity(Direction.INBOX, "small@example.com", T0, 10)
    store.mark_activity(Direction.INBOX, "large@example.com", T0, 5000)
    store.mark_activity(Direction.SENT, "none@example.com", T0, 99999)

    assert [address for address, _ in store.rows()] == [
        "large@example.com",
        "small@example.com",
        "none@example.com",
    ]


def test_concurrent_marking_keeps_every_count():
    store = ReputationStore()

    def _mark(direction: Direction) -> None:
        for _ in range(500):
            store.mark_activity(direction, "shared@example.com", T0, 1)

    threads = [threading.Thread(target=_mark, args=(d,)) for d in (Direction.SENT, Direction.INBOX)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    entry = store.lookup("shared@example.com")
    assert entry.sent_count == 500
    assert entry.inbox_count == 500
    assert entry.sent_bytes == 500
