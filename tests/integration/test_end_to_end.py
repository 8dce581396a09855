from __future__ import annotations

import logging
from datetime import date

import pytest

from mailgate.mailbox import MailboxConnector
from mailgate.orchestrator import Orchestrator
from mailgate.rules import RuleSettings, build_rules
from mailgate.runtime import PollingDaemon
from mailgate.stopwords import build_searcher
from mailgate.store import Store
from mailgate.subjects import SubjectCache
from mailgate.whitelist import WhitelistManager

pytestmark = pytest.mark.integration

USER = "me@example.com"
SENT = "[Gmail]/Sent Mail"
TABLES = {"en": ["the", "and", "about"], "es": ["para", "con", "los"]}


@pytest.fixture
def history(message_factory):
    """Sent mail and already-read Inbox mail the whitelist is derived from."""

    return {
        SENT: [message_factory(1, sender=USER, to=("colleague@work.example",))],
        "INBOX": [message_factory(1, sender="Boss@Work.example", subject="Welcome aboard")],
    }


@pytest.fixture
def build(tmp_path, mailbox_factory, history):
    def _build(inbox, *, dry_run: bool = False) -> tuple[Orchestrator, Store]:
        store = Store(tmp_path / "root")
        whitelist = WhitelistManager(
            store.whitelist,
            lambda: mailbox_factory(history),
            sent_folder=SENT,
        )
        settings = RuleSettings(
            user_emails=(USER,),
            user_names=("alice",),
            deny_terms=("viagra", "free"),
        )
        rules = build_rules(settings, whitelist.lookup, build_searcher(["en"], tables=TABLES))
        orchestrator = Orchestrator(
            connector=MailboxConnector(lambda: inbox),
            whitelist=whitelist,
            rules=rules,
            subjects=SubjectCache.load(store.subjects),
            trash_folder="Trash",
            dry_run=dry_run,
            today=lambda: date(2024, 3, 8),
        )
        return orchestrator, store

    return _build


def test_known_sender_stays_and_spam_is_trashed(build, mailbox_factory, message_factory, caplog):
    caplog.set_level(logging.INFO, logger="mailgate.orchestrator")
    inbox = mailbox_factory(
        {
            "INBOX": [
                message_factory(20, sender="boss@work.example", subject="Re: Project Update"),
                message_factory(21, sender="spam42@gmail.com", subject="FREE MONEY NOW"),
            ]
        },
        unseen={"INBOX": [20, 21]},
    )
    orchestrator, store = build(inbox)

    report = orchestrator.run_cycle()

    assert report.allowed == 1
    assert report.denied == 1
    assert inbox.moves == [([21], "Trash")]
    assert [m.uid for m in inbox.folders["INBOX"]] == [20]
    assert store.whitelist.exists()
    assert orchestrator.uid_next == 22
    assert 'spammy term "FREE" (subject): (spam42@gmail.com) "FREE MONEY NOW"' in caplog.text


def test_mail_to_a_known_colleague_is_allowed(build, mailbox_factory, message_factory):
    inbox = mailbox_factory(
        {
            "INBOX": [
                message_factory(
                    30,
                    sender="newcomer@partner.example",
                    to=(USER, "colleague@work.example"),
                    subject="Intro",
                ),
            ]
        },
        unseen={"INBOX": [30]},
    )
    orchestrator, _store = build(inbox)

    report = orchestrator.run_cycle()

    assert report.allowed == 1
    assert inbox.moves == []


def test_spam_burst_is_caught_across_restarts(build, mailbox_factory, message_factory):
    first_inbox = mailbox_factory(
        {"INBOX": [message_factory(40, sender="a@promo.example", subject="Exclusive deal 1")]},
        unseen={"INBOX": [40]},
    )
    orchestrator, _store = build(first_inbox)
    first = orchestrator.run_cycle()
    assert first.moved == []

    # A restarted process reloads the persisted subject cache.
    second_inbox = mailbox_factory(
        {"INBOX": [message_factory(41, sender="b@promo.example", subject="Exclusive deal 2")]},
        unseen={"INBOX": [41]},
    )
    orchestrator, _store = build(second_inbox)
    second = orchestrator.run_cycle()

    assert second.duplicates == 1
    assert second.moved == [40, 41]
    assert second_inbox.moves == [([40, 41], "Trash")]


def test_foreign_language_and_wrong_name_are_denied(build, mailbox_factory, message_factory):
    inbox = mailbox_factory(
        {
            "INBOX": [
                message_factory(50, sender="x@shop.example", subject="Ofertas para usted"),
                message_factory(51, sender="y@shop.example", to=((USER, "Robert"),), subject="Hi"),
                message_factory(52, sender="z@shop.example", to=((USER, "Alice"),), subject="Hi there"),
            ]
        },
        unseen={"INBOX": [50, 51, 52]},
    )
    orchestrator, _store = build(inbox, dry_run=True)

    report = orchestrator.run_cycle()

    assert report.moved == [50, 51]
    assert report.denied == 2
    assert inbox.moves == []


def test_daemon_runs_cycles_against_fake_mailbox(build, mailbox_factory, message_factory):
    inbox = mailbox_factory(
        {"INBOX": [message_factory(60, sender="deals@store.com.tw", subject="Sale")]},
        unseen={"INBOX": [60]},
    )
    orchestrator, _store = build(inbox)
    daemon = PollingDaemon(orchestrator, interval=0, max_cycles=2)

    daemon.run()

    assert orchestrator.metrics.cycles == 2
    assert orchestrator.metrics.moved == 1
    assert inbox.logged_out
