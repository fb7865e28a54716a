"""Log entries collected over a session's lifetime."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

SOURCES = ("server", "browser-console", "network", "driver")


@dataclass(frozen=True)
class LogEntry:
    """One line of output from the server, the browser, or the driver."""

    timestamp: float
    source: str
    level: str
    message: str

    def __str__(self) -> str:
        stamp = datetime.fromtimestamp(self.timestamp).strftime("%H:%M:%S.%f")[:-3]
        return f"{stamp} {self.source:<15} {self.level:<7} {self.message}"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "source": self.source,
            "level": self.level,
            "message": self.message,
        }


class LogBuffer:
    """Append-only, thread-safe log store.

    Server output arrives on reader threads and browser events on the driver's
    event loop thread, so every access goes through a lock. Reads return copies
    and never drain the buffer.
    """

    def __init__(self):
        self._entries: list[LogEntry] = []
        self._lock = threading.Lock()

    def append(self, source: str, level: str, message: str) -> LogEntry:
        if source not in SOURCES:
            raise ValueError(f"Unknown log source {source!r}; expected one of {SOURCES}")
        entry = LogEntry(time.time(), source, level, message.rstrip("\n"))
        with self._lock:
            self._entries.append(entry)
        return entry

    def entries(self, kinds: Iterable[str] | str | None = None) -> list[LogEntry]:
        """Return entries in arrival order, optionally filtered by source."""
        with self._lock:
            entries = list(self._entries)
        if kinds is None:
            return entries
        if isinstance(kinds, str):
            kinds = [kinds]
        wanted = set(kinds)
        unknown = wanted - set(SOURCES)
        if unknown:
            raise ValueError(f"Unknown log source(s): {sorted(unknown)}")
        return [e for e in entries if e.source in wanted]

    def tail(self, n: int = 20) -> list[LogEntry]:
        with self._lock:
            return self._entries[-n:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
