"""Core data structures shared across mailgate."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class Direction(str, Enum):
    """Which mailbox an observed address came from."""

    SENT = "sent"
    INBOX = "inbox"


class Action(str, Enum):
    """Terminal outcome of a rule."""

    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Decision:
    """Result produced by the first rule that matches a message."""

    action: Action
    reason: str

    @classmethod
    def allow(cls, reason: str) -> Decision:
        return cls(action=Action.ALLOW, reason=reason)

    @classmethod
    def deny(cls, reason: str) -> Decision:
        return cls(action=Action.DENY, reason=reason)


@dataclass(frozen=True)
class Address:
    """A single mailbox from an address header."""

    address: str
    name: str = ""


@dataclass(frozen=True)
class ParsedMessage:
    """Header-level view of a message fetched from the mailbox."""

    uid: int
    sender: Address | None
    to: tuple[Address, ...] = ()
    cc: tuple[Address, ...] = ()
    bcc: tuple[Address, ...] = ()
    subject: str = ""
    date: datetime | None = None
    size: int = 0
    charset: str | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def recipients(self) -> tuple[Address, ...]:
        return (*self.to, *self.cc, *self.bcc)


@dataclass
class EnrichedMessage:
    """A parsed message plus the fields rules evaluate, and its verdict.

    Everything except ``verdict`` is fixed at construction time. The verdict
    can be recorded once; a second attempt raises ``ValueError``.
    """

    message: ParsedMessage
    sender: str
    sender_name: str
    subject: str
    recipients: tuple[Address, ...]
    verdict: Decision | None = None

    @property
    def uid(self) -> int:
        return self.message.uid

    @property
    def allow_reason(self) -> str | None:
        if self.verdict is not None and self.verdict.action is Action.ALLOW:
            return self.verdict.reason
        return None

    @property
    def deny_reason(self) -> str | None:
        if self.verdict is not None and self.verdict.action is Action.DENY:
            return self.verdict.reason
        return None

    @property
    def allowed(self) -> bool:
        return self.allow_reason is not None

    @property
    def denied(self) -> bool:
        return self.deny_reason is not None

    def record(self, decision: Decision) -> None:
        if self.verdict is not None:
            raise ValueError(
                f"Message {self.uid} already classified ({self.verdict.action.value})."
            )
        self.verdict = decision


@dataclass(frozen=True)
class SearchCriteria:
    """Mailbox search filter."""

    unseen: bool = False
    uid_from: int | None = None
    since: date | None = None


@dataclass(frozen=True)
class MailboxStatus:
    """Folder counters reported when a mailbox is opened.

    ``uid_next`` is None when the server omits UIDNEXT from its SELECT reply.
    """

    uid_next: int | None
    total_messages: int


__all__ = [
    "Action",
    "Address",
    "Decision",
    "Direction",
    "EnrichedMessage",
    "MailboxStatus",
    "ParsedMessage",
    "SearchCriteria",
]
