"""PID file guard so only one mailgate daemon polls a mailbox."""

from __future__ import annotations

import os
from pathlib import Path


class PidFileError(RuntimeError):
    """Raised when another daemon already holds the PID file."""


def pid_alive(pid: int) -> bool:
    """Return True if a process with ``pid`` appears to be running."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class PidFile:
    """Context manager that claims ``path`` for the current process."""

    def __init__(self, path: Path) -> None:
        self.path = path.expanduser()
        self.pid: int | None = None

    def __enter__(self) -> PidFile:
        self.acquire()
        return self

    def __exit__(self, _exc_type, _exc, _tb) -> None:
        self.release()

    def running_pid(self) -> int | None:
        """Return the recorded PID if that process is still alive.

        A file pointing at a dead process is removed.
        """

        recorded = self._read()
        if recorded is None:
            return None
        if pid_alive(recorded):
            return recorded
        self.path.unlink(missing_ok=True)
        return None

    def acquire(self) -> int:
        running = self.running_pid()
        if running is not None and running != os.getpid():
            raise PidFileError(f"mailgate daemon already running (PID {running}).")
        self.pid = os.getpid()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(self.pid), encoding="utf-8")
        return self.pid

    def release(self) -> None:
        if self.pid is not None and self._read() == self.pid:
            self.path.unlink(missing_ok=True)
        self.pid = None

    def _read(self) -> int | None:
        try:
            contents = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            return int(contents)
        except ValueError:
            return None


__all__ = ["PidFile", "PidFileError", "pid_alive"]
