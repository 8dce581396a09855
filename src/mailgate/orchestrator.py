"""One polling cycle: fetch new mail, classify it and move the spam."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from .mailbox import CONNECTION_ERRORS, Mailbox, MailboxConnector, MailboxError
from .message import enrich
from .reputation import ReputationStore
from .rules import RuleChain, RuleError
from .subjects import SubjectCache
from .types import MailboxStatus, ParsedMessage, SearchCriteria
from .whitelist import WhitelistManager

LOGGER = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(days=7)


@dataclass
class CycleReport:
    """Outcome of a single :meth:`Orchestrator.run_cycle` call."""

    fetched: int = 0
    skipped: int = 0
    allowed: int = 0
    denied: int = 0
    duplicates: int = 0
    errors: int = 0
    moved: list[int] = field(default_factory=list)
    uid_next: int | None = None


@dataclass
class ClassificationMetrics:
    """Counters accumulated across cycles."""

    cycles: int = 0
    failed_cycles: int = 0
    processed: int = 0
    allowed: int = 0
    denied: int = 0
    moved: int = 0

    def record(self, report: CycleReport) -> None:
        self.cycles += 1
        self.processed += report.fetched
        self.allowed += report.allowed
        self.denied += report.denied
        self.moved += len(report.moved)


class Orchestrator:
    """Ties the whitelist, rule chain and subject cache to the mailbox.

    Holds the low-water mark (``uid_next``) between cycles. The first cycle
    looks back ``lookback`` days for unseen mail; later cycles only ask for
    UIDs at or above the mark reported by the previous one.
    """

    def __init__(
        self,
        *,
        connector: MailboxConnector,
        whitelist: WhitelistManager,
        rules: RuleChain,
        subjects: SubjectCache,
        trash_folder: str,
        inbox_folder: str = "INBOX",
        lookback: timedelta = DEFAULT_LOOKBACK,
        dry_run: bool = False,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._connector = connector
        self._whitelist = whitelist
        self._rules = rules
        self._subjects = subjects
        self._trash_folder = trash_folder
        self._inbox_folder = inbox_folder
        self._lookback = lookback
        self._dry_run = dry_run
        self._today = today
        self.uid_next: int | None = None
        self.metrics = ClassificationMetrics()
        self.last_report: CycleReport | None = None

    def run_cycle(self) -> CycleReport:
        """Classify unseen Inbox mail once. Errors abort only this cycle."""

        try:
            self._whitelist.update()
            mailbox = self._connector.acquire()
            try:
                report = self._process_inbox(mailbox)
            except CONNECTION_ERRORS as exc:
                self._connector.invalidate(exc)
                raise MailboxError(f"Mailbox failure during cycle: {exc}") from exc
        except Exception:
            self.metrics.failed_cycles += 1
            raise
        self.metrics.record(report)
        self.last_report = report
        return report

    def reinitialize_whitelist(self) -> ReputationStore:
        """Force a whitelist regeneration regardless of its age."""

        return self._whitelist.generate()

    def close(self) -> None:
        self._connector.close()

    def status_snapshot(self) -> dict[str, Any]:
        store = self._whitelist.store
        metrics = self.metrics
        return {
            "uid_next": self.uid_next,
            "whitelist_state": self._whitelist.state.value,
            "whitelist_size": len(store) if store is not None else 0,
            "tracked_subjects": len(self._subjects),
            "cycles": metrics.cycles,
            "failed_cycles": metrics.failed_cycles,
            "processed": metrics.processed,
            "allowed": metrics.allowed,
            "denied": metrics.denied,
            "moved": metrics.moved,
        }

    def _process_inbox(self, mailbox: Mailbox) -> CycleReport:
        status = mailbox.open_mailbox(self._inbox_folder, readonly=False)
        low_water = self.uid_next or 0
        if low_water:
            criteria = SearchCriteria(unseen=True, uid_from=low_water)
        else:
            criteria = SearchCriteria(unseen=True, since=self._today() - self._lookback)
        ids = mailbox.search_ids(criteria)

        report = CycleReport(uid_next=self._next_mark(status, ids))
        if ids:
            spam_ids: set[int] = set()
            for parsed in mailbox.fetch_headers(ids):
                # The server returns the last message for "N:*" even when its
                # UID is below N.
                if parsed.uid < low_water:
                    report.skipped += 1
                    continue
                report.fetched += 1
                self._classify(parsed, spam_ids, report)

            self._subjects.persist()
            report.moved = sorted(spam_ids)
            if spam_ids:
                self._move(mailbox, report.moved)

        mailbox.close_mailbox(expunge=True)
        self.uid_next = report.uid_next
        return report

    def _next_mark(self, status: MailboxStatus, ids: list[int]) -> int | None:
        if status.uid_next is not None:
            return status.uid_next
        # Without UIDNEXT, move just past the highest UID seen; never go back.
        if not ids:
            return self.uid_next
        return max(max(ids) + 1, self.uid_next or 0)

    def _classify(self, parsed: ParsedMessage, spam_ids: set[int], report: CycleReport) -> None:
        message = enrich(parsed)
        try:
            self._rules.classify(message)
        except RuleError:
            report.errors += 1
            LOGGER.exception(
                "Rule evaluation failed for UID %s (%s) %r",
                message.uid,
                message.sender,
                parsed.subject,
            )
            return

        if message.allowed:
            report.allowed += 1
            LOGGER.debug("%s: (%s) %r", message.allow_reason, message.sender, parsed.subject)
            return

        if self._subjects.check(message, spam_ids):
            report.duplicates += 1

        if message.denied:
            report.denied += 1
            spam_ids.add(message.uid)
            subject = f' "{parsed.subject}"' if message.subject else ""
            LOGGER.info("%s: (%s)%s", message.deny_reason, message.sender, subject)

    def _move(self, mailbox: Mailbox, uids: list[int]) -> None:
        if self._dry_run:
            LOGGER.info(
                "Dry-run: would move %s message(s) to %s: %s",
                len(uids),
                self._trash_folder,
                uids,
            )
            return
        mailbox.move_messages(uids, self._trash_folder)
        LOGGER.info("Moved %s message(s) to %s", len(uids), self._trash_folder)


__all__ = ["ClassificationMetrics", "CycleReport", "Orchestrator"]
