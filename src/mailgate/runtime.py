"""Polling loop that drives classification cycles until asked to stop."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable
from types import FrameType
from typing import Any

from .orchestrator import Orchestrator

SignalHandler = Callable[[int, FrameType | None], Any] | int | signal.Handlers | None

LOGGER = logging.getLogger(__name__)
SIG_HUP = getattr(signal, "SIGHUP", None)
SIG_USR1 = getattr(signal, "SIGUSR1", None)
TICK_SECONDS = 0.5


class PollingDaemon:
    """Run :meth:`Orchestrator.run_cycle` every ``interval`` seconds.

    SIGTERM/SIGINT stop the loop, SIGHUP forces a whitelist regeneration and
    SIGUSR1 logs a status snapshot.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        interval: float,
        max_cycles: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval = interval
        self._max_cycles = max_cycles
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._regenerate_event = threading.Event()
        self._status_event = threading.Event()
        self._installed_signals: dict[int, SignalHandler] = {}

    def run(self) -> None:
        self._install_signal_handlers()
        LOGGER.info("Starting loop with %.1fs delay", self._interval)
        try:
            self._loop()
        finally:
            self._orchestrator.close()
            self._restore_signal_handlers()

    def stop(self) -> None:
        self._stop_event.set()

    def request_regeneration(self) -> None:
        self._regenerate_event.set()

    def request_status(self) -> None:
        self._status_event.set()

    def _loop(self) -> None:
        cycles = 0
        while not self._stop_event.is_set():
            try:
                self._handle_requests()
                self._run_cycle()
                cycles += 1
                if self._max_cycles is not None and cycles >= self._max_cycles:
                    break
                self._wait(self._interval)
            except KeyboardInterrupt:
                LOGGER.info("Interrupt received; shutting down mailgate daemon.")
                self._stop_event.set()

    def _run_cycle(self) -> None:
        try:
            report = self._orchestrator.run_cycle()
        except Exception:
            LOGGER.exception("Classification cycle failed; retrying in %.1fs", self._interval)
            return
        if report.fetched or report.moved:
            LOGGER.info(
                "Cycle: %s fetched, %s allowed, %s denied, %s moved",
                report.fetched,
                report.allowed,
                report.denied,
                len(report.moved),
            )

    def _wait(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_event.is_set():
            self._handle_requests()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._sleep(min(TICK_SECONDS, remaining))

    def _handle_requests(self) -> None:
        if self._regenerate_event.is_set():
            self._regenerate_event.clear()
            try:
                self._orchestrator.reinitialize_whitelist()
            except Exception:
                LOGGER.exception("Forced whitelist regeneration failed")
        if self._status_event.is_set():
            self._status_event.clear()
            self._dump_status()

    def _dump_status(self) -> None:
        snapshot = self._orchestrator.status_snapshot()
        lines = ["mailgate daemon status snapshot:"]
        lines.extend(f"  {key}: {value}" for key, value in snapshot.items())
        LOGGER.info("\n".join(lines))

    def _install_signal_handlers(self) -> None:
        interested = tuple(
            sig for sig in (signal.SIGTERM, signal.SIGINT, SIG_HUP, SIG_USR1) if sig is not None
        )
        for sig in interested:
            try:
                previous = signal.getsignal(sig)
            except Exception:  # pragma: no cover - Windows/unsupported signals
                continue
            try:
                signal.signal(sig, self._handle_signal)
            except ValueError:
                continue
            self._installed_signals[sig] = previous

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._installed_signals.items():
            try:
                signal.signal(sig, handler)
            except Exception:  # pragma: no cover - Windows/unsupported
                continue
        self._installed_signals.clear()

    def _handle_signal(self, signum: int, _frame: FrameType | None) -> None:
        if signum in (signal.SIGTERM, signal.SIGINT):
            LOGGER.info("Signal %s received; initiating shutdown.", signum)
            self._stop_event.set()
        elif SIG_HUP is not None and signum == SIG_HUP:
            LOGGER.info("SIGHUP received; scheduling whitelist regeneration.")
            self._regenerate_event.set()
        elif SIG_USR1 is not None and signum == SIG_USR1:
            LOGGER.info("SIGUSR1 received; emitting daemon status.")
            self._status_event.set()


__all__ = ["PollingDaemon"]
