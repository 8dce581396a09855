"""Header parsing and enrichment of fetched messages."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser

from .types import Address, EnrichedMessage, ParsedMessage

LOGGER = logging.getLogger(__name__)

REPLY_PREFIX_RE = re.compile(r"^(?:re:\s*|fwd:\s*)+", re.IGNORECASE)


class MessageParseError(ValueError):
    """Raised when a message header block cannot be interpreted."""


def parse_headers(
    raw: bytes,
    *,
    uid: int,
    size: int = 0,
    internal_date: datetime | None = None,
) -> ParsedMessage:
    """Parse a raw RFC 822 header block into a ParsedMessage."""

    parser = BytesParser(policy=policy.default)
    try:
        message = parser.parsebytes(raw, headersonly=True)
        senders = _addresses(message, "From")
        return ParsedMessage(
            uid=uid,
            sender=senders[0] if senders else None,
            to=_addresses(message, "To"),
            cc=_addresses(message, "Cc"),
            bcc=_addresses(message, "Bcc"),
            subject=str(message.get("Subject") or "").strip(),
            date=_message_date(message) or _as_aware(internal_date),
            size=size,
            charset=message.get_content_charset(),
            headers={key.lower(): str(value) for key, value in message.items()},
        )
    except (TypeError, ValueError, IndexError, AttributeError) as exc:
        raise MessageParseError(f"Failed to parse headers for UID {uid}: {exc}") from exc


def strip_reply_prefixes(subject: str | None) -> str:
    """Remove any run of leading ``Re:``/``Fwd:`` markers."""

    if not subject:
        return ""
    return REPLY_PREFIX_RE.sub("", subject)


def enrich(message: ParsedMessage) -> EnrichedMessage:
    """Build the view the rule chain evaluates."""

    sender = message.sender
    return EnrichedMessage(
        message=message,
        sender=sender.address.lower() if sender else "",
        sender_name=sender.name.lower() if sender else "",
        subject=strip_reply_prefixes(message.subject),
        recipients=tuple(
            Address(address=entry.address.lower(), name=entry.name)
            for entry in message.recipients
        ),
    )


def _addresses(message: EmailMessage, header: str) -> tuple[Address, ...]:
    values = message.get_all(header) or []
    return tuple(_flatten(values))


def _flatten(values: Iterable[object]) -> Iterable[Address]:
    for value in values:
        for entry in getattr(value, "addresses", ()):
            address = (entry.addr_spec or "").strip()
            if not address or address == "<>":
                continue
            yield Address(address=address, name=(entry.display_name or "").strip())


def _message_date(message: EmailMessage) -> datetime | None:
    header = message.get("Date")
    if header is None:
        return None
    value = getattr(header, "datetime", None)
    if value is None:
        LOGGER.debug("Unparseable Date header: %r", str(header))
        return None
    return _as_aware(value)


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = ["MessageParseError", "enrich", "parse_headers", "strip_reply_prefixes"]
