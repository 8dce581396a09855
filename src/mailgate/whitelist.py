"""Lifecycle of the reputation store derived from Inbox and Sent history."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from enum import Enum

from .mailbox import Mailbox
from .reputation import ReputationEntry, ReputationStore
from .store import JsonDocument
from .types import Direction, ParsedMessage, SearchCriteria

LOGGER = logging.getLogger(__name__)

DEFAULT_FRESHNESS = timedelta(hours=24)
LARGE_MESSAGE_BYTES = 1_000_000


class WhitelistError(RuntimeError):
    """Raised when the whitelist is used before it has been loaded."""


class WhitelistState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    FRESH = "fresh"
    STALE = "stale"
    REGENERATING = "regenerating"


class WhitelistManager:
    """Owns the reputation store: freshness checks, regeneration and lookups.

    At most one regeneration runs at a time. Callers that arrive while one is
    in flight wait on the same future instead of starting their own, and
    lookups keep answering from the previous snapshot until the new store
    replaces it.
    """

    def __init__(
        self,
        document: JsonDocument,
        mailbox_factory: Callable[[], Mailbox],
        *,
        inbox_folder: str = "INBOX",
        sent_folder: str = "[Gmail]/Sent Mail",
        freshness: timedelta = DEFAULT_FRESHNESS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._document = document
        self._mailbox_factory = mailbox_factory
        self._inbox_folder = inbox_folder
        self._sent_folder = sent_folder
        self._freshness = freshness
        self._clock = clock
        self._lock = threading.Lock()
        self._generating: Future[ReputationStore] | None = None
        self._store: ReputationStore | None = None
        self._loaded_at: datetime | None = None
        self.state = WhitelistState.UNINITIALIZED

    @property
    def store(self) -> ReputationStore | None:
        return self._store

    @property
    def initialized(self) -> bool:
        return self._store is not None

    def lookup(self, address: str) -> ReputationEntry | None:
        store = self._store
        if store is None:
            raise WhitelistError("Whitelist not initialized")
        return store.lookup(address)

    def age(self) -> timedelta | None:
        modified = self._document.modified_at()
        if modified is None:
            return None
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return now - modified

    def is_stale(self) -> bool:
        age = self.age()
        return age is None or age > self._freshness

    def update(self) -> None:
        """Make sure a fresh store is loaded, regenerating it when needed."""

        with self._lock:
            pending = self._generating
            owner = pending is None and self.is_stale()
            if owner:
                pending = self._generating = Future()
        if owner:
            self.state = WhitelistState.STALE
            LOGGER.info(
                "Updating whitelist"
                if self._document.exists()
                else "Generating whitelist (this may take a few minutes)"
            )
            try:
                self._regenerate(pending)
            except Exception:
                LOGGER.exception("Whitelist regeneration failed")
        elif pending is not None:
            LOGGER.debug("Whitelist regeneration already in flight; waiting")
            try:
                pending.result()
            except Exception as exc:
                LOGGER.warning("In-flight whitelist regeneration failed: %s", exc)
        self._reload()

    def generate(self) -> ReputationStore:
        """Rebuild the store from both folders, persist it and swap it in."""

        with self._lock:
            pending = self._generating
            owner = pending is None
            if owner:
                pending = self._generating = Future()
        if not owner:
            return pending.result()
        return self._regenerate(pending)

    def _regenerate(self, pending: Future[ReputationStore]) -> ReputationStore:
        previous_state = self.state
        self.state = WhitelistState.REGENERATING
        try:
            store = self._build_store()
            store.persist(self._document)
        except Exception as exc:
            self.state = previous_state
            pending.set_exception(exc)
            raise
        else:
            self._store = store
            self._loaded_at = self._document.modified_at()
            self.state = WhitelistState.FRESH
            pending.set_result(store)
            LOGGER.info("Whitelist generated with %s address(es)", len(store))
            return store
        finally:
            with self._lock:
                self._generating = None

    def _build_store(self) -> ReputationStore:
        store = ReputationStore()
        large: list[ParsedMessage] = []
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="whitelist-scan") as pool:
            scans = [
                pool.submit(self._run_scan, scan_sent, self._sent_folder, store, large),
                pool.submit(self._run_scan, scan_inbox, self._inbox_folder, store, large),
            ]
            for scan in scans:
                scan.result()
        for message in sorted(large, key=lambda item: item.size, reverse=True):
            LOGGER.debug("Large message (%s bytes): %s", message.size, message.subject)
        return store

    def _run_scan(
        self,
        scan: Callable[..., int],
        folder: str,
        store: ReputationStore,
        large: list[ParsedMessage],
    ) -> int:
        mailbox = self._mailbox_factory()
        try:
            count = scan(mailbox, folder, store, large)
            mailbox.close_mailbox(expunge=False)
        finally:
            mailbox.logout()
        LOGGER.info("Done with %s (%s message(s))", folder, count)
        return count

    def _reload(self) -> None:
        modified = self._document.modified_at()
        if self._store is not None and modified is not None and modified == self._loaded_at:
            self.state = WhitelistState.FRESH
            return
        if self._store is None:
            self.state = WhitelistState.LOADING
        try:
            loaded = ReputationStore.load(self._document)
        except (OSError, ValueError) as exc:
            LOGGER.error("Failed to load whitelist from %s: %s", self._document.path, exc)
            loaded = None
        if loaded is not None:
            self._store = loaded
            self._loaded_at = modified
        if self._store is None:
            self.state = WhitelistState.UNINITIALIZED
            raise WhitelistError("Whitelist unexpectedly uninitialized")
        self.state = WhitelistState.FRESH


def scan_sent(
    mailbox: Mailbox,
    folder: str,
    store: ReputationStore,
    large: list[ParsedMessage] | None = None,
) -> int:
    """Credit every recipient of every sent message."""

    mailbox.open_mailbox(folder, readonly=True)
    count = 0
    for message in mailbox.fetch_headers(mailbox.search_ids(SearchCriteria())):
        count += 1
        _note_large(message, large)
        for recipient in message.recipients:
            store.mark_activity(Direction.SENT, recipient.address, message.date, message.size)
    return count


def scan_inbox(
    mailbox: Mailbox,
    folder: str,
    store: ReputationStore,
    large: list[ParsedMessage] | None = None,
) -> int:
    """Credit the sender and recipients of every message already read."""

    mailbox.open_mailbox(folder, readonly=True)
    unseen = set(mailbox.search_ids(SearchCriteria(unseen=True)))
    count = 0
    for message in mailbox.fetch_headers(mailbox.search_ids(SearchCriteria())):
        _note_large(message, large)
        if message.uid in unseen:
            continue
        count += 1
        if message.sender is not None:
            store.mark_activity(Direction.INBOX, message.sender.address, message.date, message.size)
        for recipient in message.recipients:
            store.mark_activity(Direction.INBOX, recipient.address, message.date, message.size)
    return count


def _note_large(message: ParsedMessage, large: list[ParsedMessage] | None) -> None:
    if large is not None and message.size > LARGE_MESSAGE_BYTES:
        large.append(message)


__all__ = [
    "WhitelistError",
    "WhitelistManager",
    "WhitelistState",
    "scan_inbox",
    "scan_sent",
]
