from __future__ import annotations

from datetime import datetime, timezone

from mailgate.message import enrich, parse_headers, strip_reply_prefixes

RAW_HEADERS = (
    b"From: \"Jane DOE\" <Jane.Doe@Example.COM>\r\n"
    b"To: Me <ME@example.com>, other@example.org\r\n"
    b"Cc: team@example.org\r\n"
    b"Subject: Re: Fwd: RE: Quarterly numbers\r\n"
    b"Date: Tue, 05 Mar 2024 09:30:00 +0100\r\n"
    b"Content-Type: text/plain; charset=\"ISO-8859-1\"\r\n"
    b"\r\n"
)


def test_parse_headers_extracts_addresses_and_metadata():
    parsed = parse_headers(RAW_HEADERS, uid=42, size=2048)

    assert parsed.uid == 42
    assert parsed.sender is not None
    assert parsed.sender.address == "Jane.Doe@Example.COM"
    assert parsed.sender.name == "Jane DOE"
    assert [a.address for a in parsed.to] == ["ME@example.com", "other@example.org"]
    assert [a.address for a in parsed.cc] == ["team@example.org"]
    assert parsed.subject == "Re: Fwd: RE: Quarterly numbers"
    assert parsed.charset == "iso-8859-1"
    assert parsed.size == 2048
    assert parsed.date == datetime(2024, 3, 5, 8, 30, tzinfo=timezone.utc)


def test_parse_headers_falls_back_to_internal_date():
    internal = datetime(2024, 1, 2, 3, 4, 5)

    parsed = parse_headers(b"From: a@example.com\r\nSubject: hi\r\n\r\n", uid=1, internal_date=internal)

    assert parsed.date == internal.replace(tzinfo=timezone.utc)
    assert parsed.to == ()


def test_parse_headers_without_sender():
    parsed = parse_headers(b"Subject: orphan\r\n\r\n", uid=3)

    assert parsed.sender is None
    assert parsed.charset is None


def test_strip_reply_prefixes_removes_leading_runs_only():
    assert strip_reply_prefixes("Re: Re: Fwd: hello") == "hello"
    assert strip_reply_prefixes("RE:FWD: hello re: you") == "hello re: you"
    assert strip_reply_prefixes(None) == ""


def test_enrich_normalizes_sender_subject_and_recipients():
    parsed = parse_headers(RAW_HEADERS, uid=42)

    message = enrich(parsed)

    assert message.sender == "jane.doe@example.com"
    assert message.sender_name == "jane doe"
    assert message.subject == "Quarterly numbers"
    assert [r.address for r in message.recipients] == [
        "me@example.com",
        "other@example.org",
        "team@example.org",
    ]
    assert message.recipients[0].name == "Me"
    assert message.verdict is None


def test_enrich_without_sender_uses_empty_strings(message_factory):
    message = enrich(message_factory(5, sender=None, subject=""))

    assert message.sender == ""
    assert message.sender_name == ""
    assert message.subject == ""
