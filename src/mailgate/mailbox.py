"""IMAP mailbox access used by the classifier and the whitelist scans."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any, Protocol, runtime_checkable

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import ImapConfig
from .message import MessageParseError, parse_headers
from .types import MailboxStatus, ParsedMessage, SearchCriteria

LOGGER = logging.getLogger(__name__)

FETCH_BATCH_SIZE = 200
FETCH_ITEMS = ["BODY.PEEK[HEADER]", "RFC822.SIZE", "INTERNALDATE"]
MIN_RECONNECT_DELAY = 2.0
MAX_RECONNECT_DELAY = 60.0
RECONNECT_ATTEMPTS = 5

# Errors that mean the connection is unusable and must be re-established.
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (IMAPClientError, OSError)


class MailboxError(RuntimeError):
    """Raised when the mailbox cannot be reached or a command fails."""


RETRYABLE_ERRORS = (*CONNECTION_ERRORS, MailboxError)


@runtime_checkable
class Mailbox(Protocol):
    """Operations the classifier needs from a mail server connection."""

    def open_mailbox(self, name: str, readonly: bool = False) -> MailboxStatus:
        """Select ``name`` and report its counters."""

    def search_ids(self, criteria: SearchCriteria) -> list[int]:
        """Return UIDs matching ``criteria`` in the selected folder."""

    def fetch_headers(self, ids: Sequence[int]) -> Iterator[ParsedMessage]:
        """Yield parsed headers for ``ids``; unparseable messages are skipped."""

    def move_messages(self, ids: Iterable[int], folder: str) -> None:
        """Move ``ids`` out of the selected folder into ``folder``."""

    def close_mailbox(self, expunge: bool = False) -> None:
        """Deselect the current folder."""

    def logout(self) -> None:
        """Close the connection."""


class ImapMailbox:
    """:class:`Mailbox` implementation backed by IMAPClient."""

    def __init__(self, client: IMAPClient) -> None:
        self._client = client

    @classmethod
    def connect(cls, config: ImapConfig) -> ImapMailbox:
        LOGGER.debug("Connecting to %s:%s as %s", config.host, config.port, config.username)
        try:
            client = IMAPClient(
                config.host,
                port=config.port,
                ssl=config.ssl,
                timeout=config.timeout,
            )
            client.normalise_times = False
            client.login(config.username, config.password)
        except CONNECTION_ERRORS as exc:
            raise MailboxError(f"Failed to connect to {config.host}: {exc}") from exc
        return cls(client)

    def open_mailbox(self, name: str, readonly: bool = False) -> MailboxStatus:
        info = self._client.select_folder(name, readonly=readonly)
        uid_next = info.get(b"UIDNEXT")
        if uid_next is None:
            LOGGER.warning("Server reported no UIDNEXT for %s", name)
        return MailboxStatus(
            uid_next=int(uid_next) if uid_next is not None else None,
            total_messages=int(info.get(b"EXISTS", 0) or 0),
        )

    def search_ids(self, criteria: SearchCriteria) -> list[int]:
        return sorted(int(uid) for uid in self._client.search(build_search(criteria)))

    def fetch_headers(self, ids: Sequence[int]) -> Iterator[ParsedMessage]:
        uids = list(ids)
        for start in range(0, len(uids), FETCH_BATCH_SIZE):
            batch = uids[start : start + FETCH_BATCH_SIZE]
            response = self._client.fetch(batch, FETCH_ITEMS)
            for uid in sorted(response):
                parsed = self._parse_response(uid, response[uid])
                if parsed is not None:
                    yield parsed

    def move_messages(self, ids: Iterable[int], folder: str) -> None:
        uids = sorted(set(ids))
        if not uids:
            return
        if self._client.has_capability("MOVE"):
            self._client.move(uids, folder)
            return
        self._client.copy(uids, folder)
        self._client.delete_messages(uids)
        self._client.expunge(uids if self._client.has_capability("UIDPLUS") else None)

    def close_mailbox(self, expunge: bool = False) -> None:
        if expunge or not self._client.has_capability("UNSELECT"):
            self._client.close_folder()
        else:
            self._client.unselect_folder()

    def logout(self) -> None:
        try:
            self._client.logout()
        except CONNECTION_ERRORS as exc:
            LOGGER.debug("Ignoring logout failure: %s", exc)

    def _parse_response(self, uid: int, data: dict[bytes, Any]) -> ParsedMessage | None:
        raw = data.get(b"BODY[HEADER]") or b""
        try:
            return parse_headers(
                raw,
                uid=int(uid),
                size=int(data.get(b"RFC822.SIZE") or 0),
                internal_date=data.get(b"INTERNALDATE"),
            )
        except MessageParseError as exc:
            LOGGER.warning("Skipping message: %s", exc)
            return None


def build_search(criteria: SearchCriteria) -> list[Any]:
    """Translate criteria into an IMAPClient search list."""

    terms: list[Any] = []
    if criteria.unseen:
        terms.append("UNSEEN")
    if criteria.uid_from is not None:
        terms.extend(["UID", f"{criteria.uid_from}:*"])
    if criteria.since is not None:
        terms.extend(["SINCE", criteria.since])
    return terms or ["ALL"]


class MailboxConnector:
    """Holds one live connection and reconnects with exponential backoff.

    Connect attempts that fail with a transport error are retried after 2s,
    4s, 8s... capped at a minute. After ``attempts`` failures the last error
    propagates and the next :meth:`acquire` starts a fresh series.
    """

    def __init__(
        self,
        factory: Callable[[], Mailbox],
        *,
        attempts: int = RECONNECT_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._factory = factory
        self._mailbox: Mailbox | None = None
        self._retrying = Retrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            wait=wait_exponential(
                multiplier=MIN_RECONNECT_DELAY,
                min=MIN_RECONNECT_DELAY,
                max=MAX_RECONNECT_DELAY,
            ),
            stop=stop_after_attempt(attempts),
            sleep=sleep,
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )

    @property
    def connected(self) -> bool:
        return self._mailbox is not None

    def acquire(self) -> Mailbox:
        if self._mailbox is None:
            self._mailbox = self._retrying(self._factory)
        return self._mailbox

    def invalidate(self, reason: object) -> None:
        """Drop the current connection after a transport failure."""

        LOGGER.warning("Mailbox connection lost (%s); reconnecting on next use", reason)
        self.close()

    def close(self) -> None:
        mailbox, self._mailbox = self._mailbox, None
        if mailbox is not None:
            mailbox.logout()


__all__ = [
    "CONNECTION_ERRORS",
    "ImapMailbox",
    "Mailbox",
    "MailboxConnector",
    "MailboxError",
    "build_search",
]
