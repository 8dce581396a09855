"""Short-lived cache of recent subjects used to catch duplicate spam bursts."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping, MutableSet
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from .store import JsonDocument
from .types import EnrichedMessage

LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRY = timedelta(hours=1)

_DIGITS_RE = re.compile(r"\d+")
_NON_WORD_RE = re.compile(r"\W+")


def normalize_subject(subject: str | None) -> str:
    """Reduce a subject to the key used for duplicate detection.

    Lowercases, drops digit runs and collapses non-word runs to one space.
    An empty result means the subject cannot be tracked.
    """

    if not subject:
        return ""
    text = _DIGITS_RE.sub("", subject.lower())
    return _NON_WORD_RE.sub(" ", text).strip()


@dataclass
class SubjectEntry:
    """Most recent message seen with a given normalized subject."""

    time_ms: int
    uid: int

    def to_json(self) -> dict[str, int]:
        return {"time": self.time_ms, "uid": self.uid}

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> SubjectEntry:
        return cls(time_ms=int(payload["time"]), uid=int(payload["uid"]))


class SubjectCache:
    """Normalized subject -> most recent occurrence, with time-based expiry."""

    def __init__(
        self,
        document: JsonDocument,
        *,
        expiry: timedelta = DEFAULT_EXPIRY,
        entries: dict[str, SubjectEntry] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._document = document
        self._expiry_ms = int(expiry.total_seconds() * 1000)
        self._entries: dict[str, SubjectEntry] = entries or {}
        self._clock = clock

    @classmethod
    def load(
        cls,
        document: JsonDocument,
        *,
        expiry: timedelta = DEFAULT_EXPIRY,
        clock: Callable[[], float] = time.time,
    ) -> SubjectCache:
        payload = document.read()
        entries: dict[str, SubjectEntry] = {}
        if payload is None:
            LOGGER.info("No subject cache at %s; starting empty", document.path)
        elif not isinstance(payload, Mapping):
            LOGGER.warning("Ignoring malformed subject cache %s", document.path)
        else:
            for key, value in payload.items():
                try:
                    entries[str(key)] = SubjectEntry.from_json(value)
                except (KeyError, TypeError, ValueError):
                    LOGGER.debug("Dropping malformed subject entry %r", key)
        return cls(document, expiry=expiry, entries=entries, clock=clock)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> SubjectEntry | None:
        return self._entries.get(key)

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def check(
        self,
        message: EnrichedMessage,
        spam_ids: MutableSet[int],
        *,
        now_ms: int | None = None,
    ) -> bool:
        """Record ``message`` and flag it together with a recent duplicate.

        Returns True when a duplicate was found. Both UIDs are added to
        ``spam_ids``; the previous occupant of the key is always replaced.
        """

        key = normalize_subject(message.subject)
        if not key:
            return False
        now = self.now_ms() if now_ms is None else now_ms
        uid = message.uid
        last = self._entries.get(key)
        duplicate = False
        if last is not None and last.uid != uid and now - last.time_ms < self._expiry_ms:
            duplicate = True
            if not message.denied or last.uid not in spam_ids:
                LOGGER.info("(duplicate subject) %s", message.message.subject)
            spam_ids.add(last.uid)
            spam_ids.add(uid)
        self._entries[key] = SubjectEntry(time_ms=now, uid=uid)
        return duplicate

    def purge_expired(self, now_ms: int | None = None) -> int:
        """Drop entries older than the expiry window; return how many."""

        now = self.now_ms() if now_ms is None else now_ms
        cutoff = now - self._expiry_ms
        stale = [key for key, entry in self._entries.items() if entry.time_ms < cutoff]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def serialize(self) -> dict[str, dict[str, int]]:
        return {key: entry.to_json() for key, entry in sorted(self._entries.items())}

    def persist(self, now_ms: int | None = None) -> None:
        purged = self.purge_expired(now_ms)
        if purged:
            LOGGER.debug("Purged %s expired subject(s)", purged)
        self._document.write(self.serialize())


__all__ = ["SubjectCache", "SubjectEntry", "normalize_subject"]
