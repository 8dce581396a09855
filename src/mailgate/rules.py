"""Ordered allow/deny rule chain.

Rules are evaluated in a fixed order and the first one that returns a
:class:`~mailgate.types.Decision` wins. Allow rules come first so that mail
from known correspondents is never rejected by a later content heuristic.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .types import Address, Decision, EnrichedMessage

if TYPE_CHECKING:
    from .config import Config
    from .stopwords import StopwordSearcher

LOGGER = logging.getLogger(__name__)

ReputationLookup = Callable[[str], Any]

NUMBERED_GMAIL_RE = re.compile(r"\d\d@gmail\.com")
DOMAIN_SUBJECT_RE = re.compile(r"^(?:\w[\w-]+\w\.)+(?:com)$", re.IGNORECASE)
SHOUTING_MIN_LENGTH = 6


class RuleError(RuntimeError):
    """Raised when a rule fails while evaluating a message."""

    def __init__(self, message: str, *, rule: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.rule = rule
        self.cause = cause


@runtime_checkable
class Rule(Protocol):
    """A single classification step."""

    name: str

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        """Return a decision, or None to let the next rule decide."""


@dataclass(frozen=True)
class RuleSettings:
    """Immutable snapshot of everything the rules are configured with."""

    user_emails: tuple[str, ...]
    user_names: tuple[str, ...] = ()
    allow_terms: tuple[str, ...] = ()
    deny_terms: tuple[str, ...] = ()
    max_sender_words: int = 2
    suspicious_suffixes: tuple[str, ...] = (".com.tw",)
    require_user_name: bool = True

    @classmethod
    def from_config(cls, config: Config) -> RuleSettings:
        return cls(
            user_emails=config.user.emails,
            user_names=config.user.names,
            allow_terms=config.terms.allow,
            deny_terms=config.terms.deny,
            max_sender_words=config.policy.max_sender_words,
            suspicious_suffixes=config.policy.suspicious_suffixes,
            require_user_name=config.policy.require_user_name,
        )


class RuleChain:
    """Evaluate rules in order, stopping at the first decision."""

    def __init__(self, rules: Sequence[Rule]) -> None:
        self._rules = tuple(rules)

    @property
    def names(self) -> list[str]:
        return [rule.name for rule in self._rules]

    def __len__(self) -> int:
        return len(self._rules)

    def classify(self, message: EnrichedMessage) -> Decision | None:
        """Record and return the first decision reached for ``message``."""

        for rule in self._rules:
            try:
                decision = rule.evaluate(message)
            except Exception as exc:
                raise RuleError(
                    f"Rule '{rule.name}' failed for UID {message.uid}: {exc}",
                    rule=rule.name,
                    cause=exc,
                ) from exc
            if decision is not None:
                message.record(decision)
                LOGGER.debug(
                    "UID %s %s by %s: %s",
                    message.uid,
                    decision.action.value,
                    rule.name,
                    decision.reason,
                )
                return decision
        return None


def build_rules(
    settings: RuleSettings,
    lookup: ReputationLookup,
    searcher: StopwordSearcher | None = None,
) -> RuleChain:
    """Assemble the canonical chain in its required order."""

    rules: list[Rule] = []
    allow_pattern = compile_terms(settings.allow_terms, whole_words=False)
    if allow_pattern is not None:
        rules.append(AllowTermRule(allow_pattern))
    rules.append(KnownSenderRule(lookup))
    rules.append(KnownRecipientRule(lookup, settings.user_emails))

    deny_pattern = compile_terms(settings.deny_terms, whole_words=True)
    if deny_pattern is not None:
        rules.append(DenyTermRule(deny_pattern))
    rules.extend(
        [
            SenderWordCountRule(settings.max_sender_words),
            FunctionRule("shouting_sender", shouting_sender),
            SuspiciousDomainRule(settings.suspicious_suffixes),
            FunctionRule("empty_subject", empty_subject),
            FunctionRule("foreign_charset", foreign_charset),
            FunctionRule("non_latin_name", non_latin_name),
            FunctionRule("non_latin_subject", non_latin_subject),
            FunctionRule("no_recipients", no_recipients),
            NotAddressedToUserRule(settings.user_emails),
            FunctionRule("numbered_gmail_sender", numbered_gmail_sender),
            FunctionRule("numbered_gmail_recipients", numbered_gmail_recipients),
            FunctionRule("domain_subject", domain_subject),
        ]
    )
    if settings.require_user_name and settings.user_names:
        rules.append(UserNameRule(settings.user_emails, settings.user_names))
    if searcher is not None:
        rules.append(ForeignStopwordRule(searcher))
    return RuleChain(rules)


def compile_terms(terms: Iterable[str], *, whole_words: bool) -> re.Pattern[str] | None:
    """Join term patterns into one case-insensitive alternation.

    With ``whole_words`` a match must start on a word boundary and extends to
    the end of the word, so ``opportunit`` matches ``opportunity``.
    """

    items = sorted(term for term in terms if term)
    if not items:
        return None
    alternation = "|".join(items)
    if whole_words:
        return re.compile(rf"\b((?:{alternation})\w*)", re.IGNORECASE)
    return re.compile(f"({alternation})", re.IGNORECASE)


@dataclass(frozen=True)
class FunctionRule:
    """Adapts a plain function to the :class:`Rule` protocol."""

    name: str
    check: Callable[[EnrichedMessage], Decision | None]

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        return self.check(message)


@dataclass(frozen=True)
class AllowTermRule:
    pattern: re.Pattern[str]
    name: str = "allow_term"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        for field, value in _term_fields(message):
            match = self.pattern.search(value)
            if match:
                return Decision.allow(f'allowed term "{match.group(1)}" ({field})')
        return None


@dataclass(frozen=True)
class KnownSenderRule:
    lookup: ReputationLookup
    name: str = "known_sender"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        if message.sender and self.lookup(message.sender):
            return Decision.allow("sender in whitelist")
        return None


@dataclass(frozen=True)
class KnownRecipientRule:
    lookup: ReputationLookup
    user_emails: tuple[str, ...]
    name: str = "known_recipient"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        for recipient in message.recipients:
            if _includes_user_email(recipient.address, self.user_emails):
                continue
            if self.lookup(recipient.address):
                return Decision.allow(f"known recipient ({recipient.address})")
        return None


@dataclass(frozen=True)
class DenyTermRule:
    pattern: re.Pattern[str]
    name: str = "deny_term"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        for field, value in _term_fields(message):
            match = self.pattern.search(value)
            if match:
                return Decision.deny(f'spammy term "{match.group(1)}" ({field})')
        return None


@dataclass(frozen=True)
class SenderWordCountRule:
    """Deny senders whose display name has too many words.

    Coarse: legitimate senders with long or compound names are caught too.
    Only the parsed display name is counted, never the raw From header, so a
    bare address with no name always passes.
    """

    max_words: int = 2
    name: str = "sender_word_count"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        if len(message.sender_name.split()) > self.max_words:
            return Decision.deny("too many words in sender")
        return None


@dataclass(frozen=True)
class SuspiciousDomainRule:
    suffixes: tuple[str, ...]
    name: str = "suspicious_domain"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        if not message.sender:
            return None
        for suffix in self.suffixes:
            if message.sender.endswith(suffix):
                return Decision.deny(f"sender domain {suffix}")
        return None


@dataclass(frozen=True)
class NotAddressedToUserRule:
    user_emails: tuple[str, ...]
    name: str = "not_addressed_to_user"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        if _user_recipient(message.recipients, self.user_emails) is None:
            return Decision.deny("not sent to user")
        return None


@dataclass(frozen=True)
class UserNameRule:
    """Deny mail addressed to the user under a name they don't go by.

    Coarse: assumes correspondents use one of the configured given names.
    """

    user_emails: tuple[str, ...]
    user_names: tuple[str, ...]
    name: str = "user_name_mismatch"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        user = _user_recipient(message.recipients, self.user_emails)
        if user is None or not user.name:
            return None
        display = user.name.lower()
        if any(name in display for name in self.user_names):
            return None
        return Decision.deny("user email but not user name")


@dataclass(frozen=True)
class ForeignStopwordRule:
    searcher: StopwordSearcher
    name: str = "foreign_stopword"

    def evaluate(self, message: EnrichedMessage) -> Decision | None:
        for field, value in (("sender", message.sender_name), ("subject", message.subject)):
            hit = self.searcher.detect(value)
            if hit is not None:
                return Decision.deny(f'stopword "{hit.word}" [{hit.language}] ({field})')
        return None


def shouting_sender(message: EnrichedMessage) -> Decision | None:
    sender = message.message.sender
    if sender is None:
        return None
    if _is_shouting(sender.name):
        return Decision.deny("all caps (name)")
    if _is_shouting(sender.address):
        return Decision.deny("all caps (address)")
    return None


def empty_subject(message: EnrichedMessage) -> Decision | None:
    if not message.subject:
        return Decision.deny("empty subject")
    return None


def foreign_charset(message: EnrichedMessage) -> Decision | None:
    charset = (message.message.charset or "").lower()
    if charset and charset != "utf-8":
        return Decision.deny(f"charset {charset}")
    return None


def non_latin_name(message: EnrichedMessage) -> Decision | None:
    name = message.sender_name
    if len(name) <= 1:
        return None
    if _has_non_latin(name):
        return Decision.deny("non-latin chars (name)")
    return None


def non_latin_subject(message: EnrichedMessage) -> Decision | None:
    if _has_non_latin(message.subject):
        return Decision.deny("non-latin chars (subject)")
    return None


def no_recipients(message: EnrichedMessage) -> Decision | None:
    if not message.recipients:
        return Decision.deny("empty recipients")
    return None


def numbered_gmail_sender(message: EnrichedMessage) -> Decision | None:
    if NUMBERED_GMAIL_RE.search(message.sender):
        return Decision.deny("gmail## sender")
    return None


def numbered_gmail_recipients(message: EnrichedMessage) -> Decision | None:
    suspects = [r for r in message.recipients if NUMBERED_GMAIL_RE.search(r.address)]
    if len(suspects) >= 2:
        return Decision.deny("gmail## recipients")
    return None


def domain_subject(message: EnrichedMessage) -> Decision | None:
    if DOMAIN_SUBJECT_RE.match(message.subject):
        return Decision.deny("subject is domain")
    return None


def _term_fields(message: EnrichedMessage) -> tuple[tuple[str, str], ...]:
    return (
        ("sender email", message.sender),
        ("sender name", message.sender_name),
        ("subject", message.subject),
    )


def _includes_user_email(address: str, user_emails: Iterable[str]) -> bool:
    lowered = address.lower()
    return any(email in lowered for email in user_emails)


def _user_recipient(
    recipients: Iterable[Address],
    user_emails: tuple[str, ...],
) -> Address | None:
    for recipient in recipients:
        if _includes_user_email(recipient.address, user_emails):
            return recipient
    return None


def _is_shouting(value: str | None) -> bool:
    return bool(value) and len(value) >= SHOUTING_MIN_LENGTH and value.isupper()


def _has_non_latin(value: str) -> bool:
    return any(ord(char) > 0x7F for char in value)


__all__ = [
    "FunctionRule",
    "Rule",
    "RuleChain",
    "RuleError",
    "RuleSettings",
    "build_rules",
    "compile_terms",
]
