from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

import pytest

from mailgate.types import Address, MailboxStatus, ParsedMessage, SearchCriteria

USER_EMAIL = "me@example.com"


class FakeMailbox:
    """In-memory stand-in for an IMAP connection.

    ``folders`` maps a folder name to its messages ordered by UID; ``unseen``
    lists the UIDs per folder that still carry no \\Seen flag.
    ``fail_on`` names an operation that raises ``fail_with``, limited to
    ``fail_folder`` when one is given.
    """

    def __init__(
        self,
        folders: dict[str, list[ParsedMessage]] | None = None,
        *,
        unseen: dict[str, Iterable[int]] | None = None,
        fail_on: str | None = None,
        fail_with: type[Exception] = OSError,
        fail_folder: str | None = None,
        report_uid_next: bool = True,
    ) -> None:
        self.folders = {name: list(messages) for name, messages in (folders or {}).items()}
        self.unseen = {name: set(uids) for name, uids in (unseen or {}).items()}
        self.fail_on = fail_on
        self.fail_with = fail_with
        self.fail_folder = fail_folder
        self.report_uid_next = report_uid_next
        self.selected: str | None = None
        self.searches: list[tuple[str | None, SearchCriteria]] = []
        self.moves: list[tuple[list[int], str]] = []
        self.closes: list[bool] = []
        self.logged_out = False

    def _maybe_fail(self, operation: str, folder: str | None = None) -> None:
        if self.fail_on == operation and self.fail_folder in (None, folder or self.selected):
            raise self.fail_with(f"{operation} failed")

    def open_mailbox(self, name: str, readonly: bool = False) -> MailboxStatus:
        self._maybe_fail("open_mailbox", name)
        self.selected = name
        messages = self.folders.setdefault(name, [])
        uid_next = max((message.uid for message in messages), default=0) + 1
        if not self.report_uid_next:
            uid_next = None
        return MailboxStatus(uid_next=uid_next, total_messages=len(messages))

    def search_ids(self, criteria: SearchCriteria) -> list[int]:
        self._maybe_fail("search_ids")
        self.searches.append((self.selected, criteria))
        messages = self.folders.get(self.selected or "", [])
        unseen = self.unseen.get(self.selected or "", set())
        candidates = [m.uid for m in messages if not criteria.unseen or m.uid in unseen]
        if criteria.uid_from is None:
            return candidates
        matches = [uid for uid in candidates if uid >= criteria.uid_from]
        # "N:*" always matches the highest UID, even when it is below N.
        if not matches and candidates:
            return [candidates[-1]]
        return matches

    def fetch_headers(self, ids: Sequence[int]) -> list[ParsedMessage]:
        self._maybe_fail("fetch_headers")
        wanted = set(ids)
        messages = self.folders.get(self.selected or "", [])
        return [message for message in messages if message.uid in wanted]

    def move_messages(self, ids: Iterable[int], folder: str) -> None:
        self._maybe_fail("move_messages")
        uids = sorted(set(ids))
        self.moves.append((uids, folder))
        source = self.folders.get(self.selected or "", [])
        moving = [message for message in source if message.uid in uids]
        self.folders[self.selected or ""] = [m for m in source if m.uid not in uids]
        self.folders.setdefault(folder, []).extend(moving)

    def close_mailbox(self, expunge: bool = False) -> None:
        self.closes.append(expunge)
        self.selected = None

    def logout(self) -> None:
        self.logged_out = True


def make_message(
    uid: int,
    *,
    sender: str | None = "friend@example.org",
    name: str = "",
    to: Sequence[str | tuple[str, str]] = (USER_EMAIL,),
    cc: Sequence[str] = (),
    subject: str = "Hello there",
    date: datetime | None = None,
    size: int = 1024,
    charset: str | None = "utf-8",
) -> ParsedMessage:
    """Build a ParsedMessage; ``to`` items may be ``(address, name)`` pairs."""

    def _address(value: str | tuple[str, str]) -> Address:
        if isinstance(value, tuple):
            return Address(address=value[0], name=value[1])
        return Address(address=value)

    return ParsedMessage(
        uid=uid,
        sender=Address(address=sender, name=name) if sender is not None else None,
        to=tuple(_address(item) for item in to),
        cc=tuple(_address(item) for item in cc),
        subject=subject,
        date=date or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        size=size,
        charset=charset,
    )


@pytest.fixture
def message_factory() -> Callable[..., ParsedMessage]:
    return make_message


@pytest.fixture
def mailbox_factory() -> Callable[..., FakeMailbox]:
    def _factory(*args: Any, **kwargs: Any) -> FakeMailbox:
        return FakeMailbox(*args, **kwargs)

    return _factory
