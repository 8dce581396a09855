"""Per-address activity counters derived from Sent and Inbox history."""

from __future__ import annotations

import re
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .store import JsonDocument
from .types import Direction

MAILER_DAEMON_RE = re.compile(r"^mailer-daemon")


@dataclass
class ReputationEntry:
    """Activity counters for one correspondent."""

    sent_count: int = 0
    inbox_count: int = 0
    sent_date: datetime | None = None
    inbox_date: datetime | None = None
    sent_bytes: int | None = None
    inbox_bytes: int | None = None

    def record(self, direction: Direction, when: datetime | None, size: int | None) -> None:
        if direction is Direction.SENT:
            self.sent_count += 1
            if size is not None:
                self.sent_bytes = (self.sent_bytes or 0) + size
            if when is not None and (self.sent_date is None or self.sent_date < when):
                self.sent_date = when
        else:
            self.inbox_count += 1
            if size is not None:
                self.inbox_bytes = (self.inbox_bytes or 0) + size
            if when is not None and (self.inbox_date is None or self.inbox_date < when):
                self.inbox_date = when

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sentCount": self.sent_count,
            "inboxCount": self.inbox_count,
        }
        if self.sent_date is not None:
            payload["sentDate"] = self.sent_date.isoformat()
        if self.inbox_date is not None:
            payload["inboxDate"] = self.inbox_date.isoformat()
        if self.sent_bytes is not None:
            payload["sentBytes"] = self.sent_bytes
        if self.inbox_bytes is not None:
            payload["inboxBytes"] = self.inbox_bytes
        return payload

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> ReputationEntry:
        return cls(
            sent_count=int(payload.get("sentCount", 0)),
            inbox_count=int(payload.get("inboxCount", 0)),
            sent_date=_parse_date(payload.get("sentDate")),
            inbox_date=_parse_date(payload.get("inboxDate")),
            sent_bytes=_optional_int(payload.get("sentBytes")),
            inbox_bytes=_optional_int(payload.get("inboxBytes")),
        )


class ReputationStore:
    """Mapping of lowercased address to :class:`ReputationEntry`.

    ``mark_activity`` is serialised by a lock so the Sent and Inbox scans can
    populate the same store from separate threads.
    """

    def __init__(self, addresses: dict[str, ReputationEntry] | None = None) -> None:
        self._addresses: dict[str, ReputationEntry] = addresses or {}
        self._lock = threading.Lock()

    def mark_activity(
        self,
        direction: Direction | str,
        address: str,
        when: datetime | None = None,
        size: int | None = None,
    ) -> None:
        """Count one message exchanged with ``address``."""

        if not isinstance(address, str):
            raise TypeError(f"{address!r} is not a string")
        normalized = address.strip().lower()
        if not normalized or MAILER_DAEMON_RE.match(normalized):
            return
        source = Direction(direction)
        with self._lock:
            entry = self._addresses.get(normalized)
            if entry is None:
                entry = self._addresses[normalized] = ReputationEntry()
            entry.record(source, when, size)

    def lookup(self, address: str | None) -> ReputationEntry | None:
        if not address:
            return None
        return self._addresses.get(address.strip().lower())

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.lookup(address) is not None

    def __len__(self) -> int:
        return len(self._addresses)

    def rows(self) -> Iterator[tuple[str, ReputationEntry]]:
        """Yield entries ordered by inbox volume, largest first."""

        with self._lock:
            items = list(self._addresses.items())
        items.sort(key=lambda item: (-(item[1].inbox_bytes or 0), item[0]))
        yield from items

    def serialize(self) -> dict[str, Any]:
        with self._lock:
            return {
                "addresses": {
                    address: entry.to_json()
                    for address, entry in sorted(self._addresses.items())
                }
            }

    @classmethod
    def deserialize(cls, document: Mapping[str, Any]) -> ReputationStore:
        raw = document.get("addresses")
        if not isinstance(raw, Mapping):
            raise ValueError("Reputation document is missing an 'addresses' mapping.")
        addresses = {
            str(address).lower(): ReputationEntry.from_json(payload)
            for address, payload in raw.items()
            if isinstance(payload, Mapping)
        }
        return cls(addresses)

    def persist(self, document: JsonDocument) -> None:
        document.write(self.serialize())

    @classmethod
    def load(cls, document: JsonDocument) -> ReputationStore | None:
        payload = document.read()
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            raise ValueError(f"{document.path} does not contain a JSON object.")
        return cls.deserialize(payload)


def _parse_date(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


__all__ = ["MAILER_DAEMON_RE", "ReputationEntry", "ReputationStore"]
